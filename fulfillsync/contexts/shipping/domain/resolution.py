from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


SOURCE_CHANNEL = "channel"
SOURCE_CLIENT = "client"
SOURCE_GLOBAL = "global"
SOURCE_CHANNEL_DEFAULT = "channel_default"
SOURCE_CLIENT_DEFAULT = "client_default"
SOURCE_NONE = "none"

OUTCOME_RESOLVED = "resolved"
OUTCOME_RESOLVED_VIA_FALLBACK = "resolved_via_fallback"
OUTCOME_UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ShippingResolution:
    """Result of resolving a storefront shipping selection.

    ``used_fallback``/``mismatch``/``should_hold_order`` keep the values
    dashboards already read; ``outcome`` is the three-state summary of them.
    """

    success: bool
    shipping_method_id: int | None = None
    external_shipping_method_id: str | None = None
    shipping_method_name: str | None = None
    used_fallback: bool = False
    mismatch: bool = False
    should_hold_order: bool = False
    reason: str | None = None
    source: str = SOURCE_NONE

    @property
    def outcome(self) -> str:
        if not self.success:
            return OUTCOME_UNRESOLVED
        if self.used_fallback:
            return OUTCOME_RESOLVED_VIA_FALLBACK
        return OUTCOME_RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "shipping_method_id": self.shipping_method_id,
            "external_shipping_method_id": self.external_shipping_method_id,
            "shipping_method_name": self.shipping_method_name,
            "used_fallback": self.used_fallback,
            "mismatch": self.mismatch,
            "should_hold_order": self.should_hold_order,
            "reason": self.reason,
            "source": self.source,
            "outcome": self.outcome,
        }

    @staticmethod
    def resolved(method: Dict[str, Any], source: str, *, fallback: bool) -> "ShippingResolution":
        return ShippingResolution(
            success=True,
            shipping_method_id=int(method["id"]),
            external_shipping_method_id=method.get("external_id"),
            shipping_method_name=method.get("name"),
            used_fallback=fallback,
            mismatch=False,
            should_hold_order=False,
            source=source,
        )

    @staticmethod
    def unresolved(reason: str) -> "ShippingResolution":
        return ShippingResolution(
            success=False,
            used_fallback=False,
            mismatch=True,
            should_hold_order=True,
            reason=reason,
            source=SOURCE_NONE,
        )
