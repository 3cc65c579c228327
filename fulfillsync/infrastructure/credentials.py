from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from fulfillsync.errors import IntegrationError


class CredentialVault(ABC):
    """Source of channel webhook secrets and fulfillment network tokens.

    Callers ask per request; values are never cached outside the vault.
    """

    @abstractmethod
    def channel_secret(self, channel_id: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def fulfillment_token(self, client_id: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def channel_credentials(self, channel_id: str) -> Dict[str, str]:
        """Storefront API credentials (Shopify domain and token, WooCommerce URL and keys)."""
        raise NotImplementedError


def _parse_secrets(raw: Any) -> Dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return {str(key): str(value) for key, value in raw.items() if value}
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise IntegrationError(code="credentials_invalid", details="CHANNEL_SECRETS must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise IntegrationError(code="credentials_invalid", details="CHANNEL_SECRETS must be a JSON object")
    return {str(key): str(value) for key, value in parsed.items() if value}


class ConfigCredentialVault(CredentialVault):
    """Reads ``CHANNEL_SECRETS`` (JSON ``{channel_id: secret}``), ``CHANNEL_CREDENTIALS``
    (JSON ``{channel_id: {name: value}}``) and ``FFN_TOKEN`` from app config.
    """

    def __init__(self, config: Mapping[str, Any]) -> None:
        self._config = config

    def channel_secret(self, channel_id: str) -> str | None:
        secrets = _parse_secrets(self._config.get("CHANNEL_SECRETS"))
        return secrets.get(str(channel_id or ""))

    def fulfillment_token(self, client_id: str) -> str | None:
        token = str(self._config.get("FFN_TOKEN") or "").strip()
        return token or None

    def channel_credentials(self, channel_id: str) -> Dict[str, str]:
        raw = self._config.get("CHANNEL_CREDENTIALS")
        if not raw:
            return {}
        if not isinstance(raw, Mapping):
            try:
                raw = json.loads(str(raw))
            except json.JSONDecodeError as exc:
                raise IntegrationError(code="credentials_invalid", details="CHANNEL_CREDENTIALS must be a JSON object") from exc
        if not isinstance(raw, Mapping):
            raise IntegrationError(code="credentials_invalid", details="CHANNEL_CREDENTIALS must be a JSON object")
        entry = raw.get(str(channel_id or ""))
        if not isinstance(entry, Mapping):
            return {}
        return {str(key): str(value) for key, value in entry.items() if value not in (None, "")}
