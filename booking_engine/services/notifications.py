from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo
import asyncio
import logging

from celery import Celery

from booking_engine.core.celery import (
    SCHEDULE_REMINDER_TASK,
    SEND_CONFIRMATION_TASK,
    celery_app,
)
from booking_engine.core.config import settings
from booking_engine.core.redis import RedisClient, redis_client
from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.enums import NotificationChannel
from booking_engine.utils.time import parse_time


logger = logging.getLogger(__name__)

# Realtime event types
APPOINTMENT_CREATED = "appointment.created"
APPOINTMENT_UPDATED = "appointment.updated"
APPOINTMENT_STATUS_CHANGED = "appointment.status_changed"
APPOINTMENT_RESCHEDULED = "appointment.rescheduled"


class NotificationDispatcher(Protocol):
    async def schedule_reminder(
        self,
        appointment: AppointmentRecord,
        channel: NotificationChannel,
        offset_minutes: int,
        timezone: str = "UTC",
    ) -> None:
        ...

    async def send_confirmation(self, appointment: AppointmentRecord) -> None:
        ...


class RealtimeBroadcaster(Protocol):
    async def emit(
        self,
        company_id: str,
        branch_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        ...


def appointment_start(appointment: AppointmentRecord, timezone: str = "UTC") -> datetime:
    """Aware start datetime of an appointment in its branch's wall-clock timezone."""
    midnight = datetime.combine(appointment.date, datetime.min.time(), tzinfo=ZoneInfo(timezone))
    return midnight + timedelta(minutes=parse_time(appointment.start_time))


class CeleryNotificationDispatcher:
    """Hands reminder and confirmation work to the messaging workers."""

    def __init__(self, app: Optional[Celery] = None):
        self.app = app or celery_app

    async def schedule_reminder(
        self,
        appointment: AppointmentRecord,
        channel: NotificationChannel,
        offset_minutes: int,
        timezone: str = "UTC",
    ) -> None:
        eta = appointment_start(appointment, timezone) - timedelta(minutes=offset_minutes)
        # send_task publishes to the broker synchronously
        await asyncio.to_thread(
            self.app.send_task,
            SCHEDULE_REMINDER_TASK,
            kwargs={
                "appointment_id": appointment.id,
                "channel": channel.value,
                "offset_minutes": offset_minutes,
            },
            eta=eta,
        )
        logger.debug(
            f"Queued {channel.value} reminder for appointment {appointment.id} at {eta.isoformat()}"
        )

    async def send_confirmation(self, appointment: AppointmentRecord) -> None:
        await asyncio.to_thread(
            self.app.send_task,
            SEND_CONFIRMATION_TASK,
            kwargs={"appointment_id": appointment.id},
        )
        logger.debug(f"Queued confirmation for appointment {appointment.id}")


class RedisRealtimeBroadcaster:
    """Publishes appointment events on per-branch Redis pub/sub channels."""

    def __init__(
        self,
        client: Optional[RedisClient] = None,
        channel_prefix: Optional[str] = None,
    ):
        self.client = client or redis_client
        self.channel_prefix = channel_prefix or settings.REALTIME_CHANNEL_PREFIX

    def channel_for(self, company_id: str, branch_id: str) -> str:
        return f"{self.channel_prefix}:{company_id}:{branch_id}"

    async def emit(
        self,
        company_id: str,
        branch_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        channel = self.channel_for(company_id, branch_id)
        await self.client.publish(channel, {"type": event_type, "payload": payload})
        logger.debug(f"Published {event_type} on {channel}")
