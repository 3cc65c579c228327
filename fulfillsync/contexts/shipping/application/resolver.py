from __future__ import annotations

from typing import List

from flask import current_app

from fulfillsync.contexts.shipping.domain.resolution import (
    SOURCE_CHANNEL,
    SOURCE_CHANNEL_DEFAULT,
    SOURCE_CLIENT,
    SOURCE_CLIENT_DEFAULT,
    SOURCE_GLOBAL,
    ShippingResolution,
)
from fulfillsync.contexts.shipping.infrastructure.repository import ShippingRepository
from fulfillsync.errors import NotFoundError, ValidationError
from fulfillsync.observability import observe_shipping_resolution


def _matches(mapping: dict, code: str, title: str) -> bool:
    mapped_code = str(mapping.get("channel_shipping_code") or "").strip().lower()
    mapped_title = str(mapping.get("channel_shipping_title") or "").strip().lower()
    if code and mapped_code and mapped_code == code:
        return True
    return bool(title and mapped_title and title in mapped_title)


def _scope_of(mapping: dict) -> str:
    if mapping.get("channel_id"):
        return SOURCE_CHANNEL
    if mapping.get("client_id"):
        return SOURCE_CLIENT
    return SOURCE_GLOBAL


class ShippingMethodResolver:
    """Maps a storefront shipping selection onto a fulfillment shipping method.

    Lookup order: channel mapping, client mapping, global mapping, channel
    default, client default. A default counts as ``used_fallback`` but only a
    miss on every step asks the caller to hold the order.
    """

    _SCOPE_PRIORITY = (SOURCE_CHANNEL, SOURCE_CLIENT, SOURCE_GLOBAL)

    def __init__(self, repository: ShippingRepository | None = None) -> None:
        self.repository = repository or ShippingRepository()

    def resolve(
        self,
        db,
        *,
        client_id: str,
        channel_id: str | None,
        channel_type: str,
        code: str | None,
        title: str | None,
    ) -> ShippingResolution:
        resolution = self._resolve(
            db,
            client_id=client_id,
            channel_id=channel_id,
            channel_type=channel_type,
            code=str(code or "").strip().lower(),
            title=str(title or "").strip().lower(),
            label=str(title or code or "").strip() or "(none)",
        )
        observe_shipping_resolution(resolution.outcome)
        log = current_app.logger.warning if resolution.should_hold_order else current_app.logger.info
        log(
            "shipping_method_resolved",
            extra={
                "client_id": client_id,
                "channel_id": channel_id,
                "channel_shipping_code": code,
                "channel_shipping_title": title,
                "outcome": resolution.outcome,
                "source": resolution.source,
                "shipping_method_id": resolution.shipping_method_id,
            },
        )
        return resolution

    def _resolve(
        self,
        db,
        *,
        client_id: str,
        channel_id: str | None,
        channel_type: str,
        code: str,
        title: str,
        label: str,
    ) -> ShippingResolution:
        if code or title:
            candidates = self.repository.candidate_mappings(
                db,
                channel_type=channel_type,
                client_id=client_id,
                channel_id=channel_id,
            )
            matched = [mapping for mapping in candidates if _matches(mapping, code, title)]
            for scope in self._SCOPE_PRIORITY:
                for mapping in matched:
                    if _scope_of(mapping) != scope:
                        continue
                    method = self.repository.get_method(db, mapping["shipping_method_id"])
                    if method:
                        return ShippingResolution.resolved(method, scope, fallback=False)

        channel_default = self.repository.get_method(db, self.repository.channel_default_method_id(db, channel_id))
        if channel_default:
            return ShippingResolution.resolved(channel_default, SOURCE_CHANNEL_DEFAULT, fallback=True)

        client_default = self.repository.get_method(db, self.repository.client_default_method_id(db, client_id))
        if client_default:
            return ShippingResolution.resolved(client_default, SOURCE_CLIENT_DEFAULT, fallback=True)

        return ShippingResolution.unresolved(
            f'No mapping found for shipping method "{label}" and no default shipping method configured.'
        )

    def record_mismatch(
        self,
        db,
        *,
        client_id: str,
        order_id: int | None,
        channel_id: str | None,
        code: str | None,
        title: str | None,
        used_fallback: bool = False,
        fallback_method_id: int | None = None,
    ) -> tuple[int, bool]:
        """Persist a mismatch row; an open one for the same order is reused.

        Returns ``(mismatch_id, created)``.
        """
        if order_id is not None:
            existing = self.repository.open_mismatch_for_order(db, client_id, order_id)
            if existing:
                return int(existing["id"]), False
        mismatch_id = self.repository.insert_mismatch(
            db,
            {
                "client_id": client_id,
                "channel_id": channel_id,
                "order_id": order_id,
                "channel_shipping_code": code,
                "channel_shipping_title": title,
                "used_fallback": used_fallback,
                "fallback_method_id": fallback_method_id,
                # A fallback is intentional configuration, so it is recorded already resolved.
                "is_resolved": used_fallback,
            },
        )
        current_app.logger.warning(
            "shipping_mismatch_recorded",
            extra={"client_id": client_id, "order_id": order_id, "mismatch_id": mismatch_id},
        )
        return mismatch_id, True

    def resolve_mismatch(
        self,
        db,
        mismatch_id: int,
        *,
        resolved_by: str,
        note: str | None = None,
        shipping_method_id: int | None = None,
    ) -> dict:
        mismatch = self.repository.get_mismatch(db, mismatch_id)
        if mismatch is None:
            raise NotFoundError(details=f"shipping mismatch {mismatch_id}")
        if shipping_method_id is not None and self.repository.get_method(db, shipping_method_id) is None:
            raise ValidationError(code="shipping_method_invalid", details=f"shipping method {shipping_method_id}")
        changed = self.repository.mark_mismatch_resolved(
            db,
            mismatch_id,
            resolved_by=str(resolved_by or "").strip() or "operator",
            note=note,
            shipping_method_id=shipping_method_id,
        )
        db.commit()
        if changed:
            current_app.logger.info(
                "shipping_mismatch_resolved",
                extra={"mismatch_id": int(mismatch_id), "resolved_by": resolved_by, "shipping_method_id": shipping_method_id},
            )
        return self.repository.get_mismatch(db, mismatch_id) or mismatch

    def unresolved_mismatches(self, db, client_id: str | None = None) -> List[dict]:
        return self.repository.list_unresolved(db, client_id)

    def upsert_mapping(
        self,
        db,
        *,
        channel_type: str,
        channel_shipping_code: str,
        shipping_method_id: int,
        channel_shipping_title: str | None = None,
        client_id: str | None = None,
        channel_id: str | None = None,
    ) -> int:
        code = str(channel_shipping_code or "").strip().lower()
        if not code:
            raise ValidationError(code="shipping_code_required", details="channel_shipping_code is required")
        if self.repository.get_method(db, shipping_method_id, active_only=False) is None:
            raise ValidationError(code="shipping_method_invalid", details=f"shipping method {shipping_method_id}")
        existing = self.repository.find_mapping(
            db,
            channel_type=channel_type,
            channel_shipping_code=code,
            client_id=client_id,
            channel_id=channel_id,
        )
        if existing:
            self.repository.update_mapping(
                db,
                int(existing["id"]),
                channel_shipping_title=channel_shipping_title,
                shipping_method_id=shipping_method_id,
            )
            mapping_id = int(existing["id"])
        else:
            mapping_id = self.repository.insert_mapping(
                db,
                {
                    "client_id": client_id,
                    "channel_id": channel_id,
                    "channel_type": channel_type,
                    "channel_shipping_code": code,
                    "channel_shipping_title": channel_shipping_title,
                    "shipping_method_id": shipping_method_id,
                },
            )
        db.commit()
        return mapping_id
