from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from services.errors import PermanentProviderError, TransientProviderError
from utils.clock import parse_iso
from utils.retry import call_with_retry
from utils.urls import append_query

logger = logging.getLogger(__name__)

PROVIDER = "calendly"


@dataclass(frozen=True)
class TimeSlot:
    event_type_ref: str
    start: datetime  # naive UTC
    end: datetime
    scheduling_url: str | None = None


class SchedulingProvider(ABC):
    @abstractmethod
    def list_available_slots(self, event_type_ref: str, start: datetime, end: datetime,
                             duration_minutes: int) -> list[TimeSlot]:
        """Available slots for an event type between start and end."""
        raise NotImplementedError

    @abstractmethod
    def verify_slot_still_available(self, slot: TimeSlot) -> bool:
        """Re-check a single slot right before it is committed."""
        raise NotImplementedError

    def build_scheduling_url(self, scheduling_url: str, correlation_token: str,
                             name: str | None = None, email: str | None = None) -> str:
        # utm_content comes back on the invitee webhook as tracking.utm_content
        return append_query(scheduling_url, {
            "utm_source": "buildappswith",
            "utm_content": correlation_token,
            "name": name,
            "email": email,
        })


class CalendlyScheduling(SchedulingProvider):
    BASE_URL = "https://api.calendly.com"

    def __init__(
        self,
        access_token: str | None,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url or self.BASE_URL,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"} if access_token else {},
            transport=transport,
        )
        self._configured = bool(access_token)
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict) -> dict:
        if not self._configured:
            raise PermanentProviderError("Calendly access token not configured", provider=PROVIDER)
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Calendly request timed out: {e}", provider=PROVIDER) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientProviderError(f"Calendly returned {status}", provider=PROVIDER) from e
            raise PermanentProviderError(f"Calendly rejected request ({status})", provider=PROVIDER) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Calendly unreachable: {e}", provider=PROVIDER) from e
        except ValueError as e:
            raise PermanentProviderError("Calendly returned invalid JSON", provider=PROVIDER) from e

    def list_available_slots(self, event_type_ref: str, start: datetime, end: datetime,
                             duration_minutes: int) -> list[TimeSlot]:
        params = {
            "event_type": event_type_ref,
            "start_time": start.strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
            "end_time": end.strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
        }
        data = call_with_retry(
            lambda: self._get("/event_type_available_times", params),
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
            operation="calendly.list_available_slots",
        )

        slots: list[TimeSlot] = []
        for item in data.get("collection", []):
            if item.get("status") != "available":
                continue
            try:
                slot_start = parse_iso(item["start_time"])
            except (KeyError, ValueError, AttributeError):
                logger.warning("Skipping malformed Calendly slot", extra={"reason": str(item)[:200]})
                continue
            slots.append(TimeSlot(
                event_type_ref=event_type_ref,
                start=slot_start,
                end=slot_start + timedelta(minutes=duration_minutes),
                scheduling_url=item.get("scheduling_url"),
            ))
        return slots

    def verify_slot_still_available(self, slot: TimeSlot) -> bool:
        duration = int((slot.end - slot.start).total_seconds() // 60)
        slots = self.list_available_slots(slot.event_type_ref, slot.start, slot.end, duration)
        return any(s.start == slot.start for s in slots)
