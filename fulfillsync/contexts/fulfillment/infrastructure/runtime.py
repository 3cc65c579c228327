from __future__ import annotations

from typing import Any, Callable, Mapping

from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGateway
from fulfillsync.contexts.fulfillment.infrastructure.client import FulfillmentHttpClient
from fulfillsync.contexts.fulfillment.infrastructure.http_gateway import HttpFulfillmentGateway
from fulfillsync.contexts.fulfillment.infrastructure.simulator import DeterministicFulfillmentSimulator
from fulfillsync.infrastructure.credentials import CredentialVault


GatewayFactory = Callable[[str], FulfillmentGateway]

FFN_MODES = ("simulator", "http")


def _int_config(config: Mapping[str, Any], key: str, default: int) -> int:
    try:
        return int(config.get(key, default))
    except (TypeError, ValueError):
        return default


def build_gateway_factory(config: Mapping[str, Any], vault: CredentialVault) -> GatewayFactory:
    """Return ``client_id -> FulfillmentGateway`` for the configured ``FFN_MODE``.

    The simulator is shared by every client. HTTP gateways ask the vault for
    the client's token on every request.
    """
    mode = str(config.get("FFN_MODE") or "simulator").strip().lower()
    if mode not in FFN_MODES:
        raise ValueError(f"invalid FFN_MODE: {mode}")

    if mode == "simulator":
        simulator = DeterministicFulfillmentSimulator(seed=_int_config(config, "FFN_SIMULATOR_SEED", 42))
        return lambda _client_id: simulator

    def _http_gateway(client_id: str) -> FulfillmentGateway:
        client = FulfillmentHttpClient(
            str(config.get("FFN_BASE_URL") or ""),
            token_provider=lambda: vault.fulfillment_token(client_id),
            timeout_seconds=_int_config(config, "FFN_TIMEOUT_SECONDS", 20),
            retry_attempts=_int_config(config, "FFN_RETRY_ATTEMPTS", 2),
            retry_backoff_ms=_int_config(config, "FFN_RETRY_BACKOFF_MS", 300),
            verify_ssl=bool(config.get("FFN_VERIFY_SSL", True)),
        )
        return HttpFulfillmentGateway(client)

    return _http_gateway
