from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from src.domain.retry import fixed_delay, retry_until_found, schedule_delay
from src.models.events import NormalizedEvent
from src.observability import incr_metric, log_event
from src.store import TrackingStore


@dataclass
class Resolution:
    resolved: bool
    message: dict[str, Any] | None = None
    strategy: str | None = None

    @property
    def message_id(self) -> str | None:
        return str(self.message["id"]) if self.message else None


UNRESOLVED = Resolution(resolved=False)


def recipient_email(message: dict[str, Any]) -> str | None:
    recipient = message.get("recipient")
    if isinstance(recipient, list):
        recipient = recipient[0] if recipient else None
    if isinstance(recipient, dict) and recipient.get("email"):
        return str(recipient["email"]).strip()
    return None


class MessageResolver:
    """Links a normalized event to its ``emails`` row.

    Order: direct lookup by external id, one delayed retry of the direct
    lookup, then a scan of the campaign's recent messages matched on
    recipient address. ``relink`` repeats the direct lookup and the scan
    under a progressive backoff bounded by a total sleep budget.
    """

    def __init__(
        self,
        store: TrackingStore,
        *,
        retry_delay_seconds: float,
        campaign_scan_limit: int,
        relink_delays: list[float],
        relink_max_total_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        request_id: str | None = None,
    ) -> None:
        self.store = store
        self.retry_delay_seconds = retry_delay_seconds
        self.campaign_scan_limit = campaign_scan_limit
        self.relink_delays = relink_delays
        self.relink_max_total_seconds = relink_max_total_seconds
        self.sleep = sleep
        self.request_id = request_id

    async def _direct_lookup(self, external_id: str) -> dict[str, Any] | None:
        # A failed lookup counts as a miss so later attempts and the scan still run.
        try:
            return await self.store.find_message_by_external_id(external_id)
        except Exception as exc:
            incr_metric("webhook.resolver.lookup_failed")
            log_event(
                "webhook_direct_lookup_failed",
                level=logging.WARNING,
                request_id=self.request_id,
                external_message_id=external_id,
                error=str(exc),
            )
            return None

    async def _campaign_scan(self, campaign_id: str, recipient: str) -> dict[str, Any] | None:
        try:
            candidates = await self.store.find_messages_by_campaign(campaign_id, self.campaign_scan_limit)
        except Exception as exc:
            incr_metric("webhook.resolver.scan_failed")
            log_event(
                "webhook_campaign_scan_failed",
                level=logging.WARNING,
                request_id=self.request_id,
                campaign_id=campaign_id,
                error=str(exc),
            )
            return None
        for candidate in candidates:
            if recipient_email(candidate) == recipient:
                return candidate
        return None

    async def lookup_once(
        self,
        *,
        external_id: str | None,
        campaign_id: str | None,
        recipient: str | None,
        direct_strategy: str = "direct",
    ) -> Resolution | None:
        """One pass of direct lookup then campaign scan, without any waiting."""
        if external_id:
            message = await self._direct_lookup(external_id)
            if message is not None:
                return Resolution(True, message, direct_strategy)
        if not campaign_id or not recipient:
            return None
        message = await self._campaign_scan(campaign_id, recipient)
        if message is None:
            return None
        return Resolution(True, message, "campaign_recipient")

    async def resolve(self, event: NormalizedEvent) -> Resolution:
        external_id = event.external_message_id
        if external_id:
            calls = 0

            async def _lookup() -> dict[str, Any] | None:
                nonlocal calls
                calls += 1
                return await self._direct_lookup(external_id)

            message = await retry_until_found(
                _lookup,
                attempts=2,
                delay=fixed_delay(self.retry_delay_seconds),
                sleep=self.sleep,
            )
            if message is not None:
                return self._found(Resolution(True, message, "direct" if calls == 1 else "direct_retry"), event)

        scanned = await self.lookup_once(
            external_id=None,
            campaign_id=event.tag_campaign_id,
            recipient=event.recipient_address,
        )
        if scanned is not None:
            return self._found(scanned, event)
        return UNRESOLVED

    async def relink(self, event: NormalizedEvent) -> Resolution:
        """Best-effort second pass after the event has been stored unlinked."""

        async def _attempt() -> Resolution | None:
            return await self.lookup_once(
                external_id=event.external_message_id,
                campaign_id=event.tag_campaign_id,
                recipient=event.recipient_address,
                direct_strategy="relink_direct",
            )

        found = await retry_until_found(
            _attempt,
            attempts=len(self.relink_delays),
            delay=schedule_delay(self.relink_delays),
            delay_first=True,
            max_total_seconds=self.relink_max_total_seconds,
            sleep=self.sleep,
        )
        if found is None:
            return UNRESOLVED
        return self._found(found, event)

    def _found(self, resolution: Resolution, event: NormalizedEvent) -> Resolution:
        incr_metric("webhook.resolver.resolved", strategy=resolution.strategy)
        log_event(
            "webhook_message_resolved",
            request_id=self.request_id,
            strategy=resolution.strategy,
            message_id=resolution.message_id,
            external_message_id=event.external_message_id,
        )
        return resolution
