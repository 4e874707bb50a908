"""Notification Dispatcher: one e-mail per resolved recipient on publish."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol

import httpx
import structlog

from gar.errors import NotificationError
from gar.schemas.recipients import NotificationRecipient, RecipientSelection
from gar.services.drafts import current_band, current_score
from gar.services.recipients import resolve_recipients
from gar.services.scoring import BAND_COLORS, LABEL_SCHEMES, RISK_FACTORS

logger = structlog.get_logger()


SUBJECT_TEMPLATES = {
    "high": "URGENT: High Risk GAR Assessment - {station}",
    "moderate": "Caution: Moderate Risk GAR Assessment - {station}",
    "low": "GAR Assessment Published - {station}",
}

NOT_SPECIFIED = "Not specified"


@dataclass
class DeliveryResult:
    """Provider acknowledgement for one message."""

    recipient: str
    status_code: int
    text: str = ""


@dataclass
class DispatchResult:
    """Outcome of sending one publish notification to every recipient."""

    attempted: int = 0
    sent: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class NotificationProvider(Protocol):
    async def send(self, template_params: dict[str, Any]) -> DeliveryResult: ...


class EmailJsProvider:
    """HTTP client for the EmailJS REST send endpoint."""

    def __init__(
        self,
        api_url: str,
        service_id: str,
        template_id: str,
        user_id: str,
        access_token: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.service_id = service_id
        self.template_id = template_id
        self.user_id = user_id
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    async def send(self, template_params: dict[str, Any]) -> DeliveryResult:
        payload: dict[str, Any] = {
            "service_id": self.service_id,
            "template_id": self.template_id,
            "user_id": self.user_id,
            "template_params": template_params,
        }
        if self.access_token:
            payload["accessToken"] = self.access_token
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.api_url}/email/send", json=payload)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Email provider request failed: {exc}") from exc
        if response.status_code != 200:
            raise NotificationError(f"Email provider error: {response.status_code} {response.text}")
        return DeliveryResult(
            recipient=template_params.get("to_email", ""),
            status_code=response.status_code,
            text=response.text,
        )


def assessment_url(app_base_url: str, assessment_id: str) -> str:
    return f"{app_base_url.rstrip('/')}/gar-assessment/{assessment_id}"


def build_subject(band: str, station: str) -> str:
    return SUBJECT_TEMPLATES[band].format(station=station or NOT_SPECIFIED)


def build_message(
    assessment: Mapping[str, Any],
    recipient: NotificationRecipient,
    assessment_id: str,
    app_base_url: str,
    scheme: str = "risk",
    from_name: str = "Fire Department GAR System",
    reply_to: str = "noreply@firedepartment.com",
) -> dict[str, Any]:
    """Template parameters for one recipient's publish notification."""
    score = current_score(assessment)
    band = current_band(assessment)
    risk_level = LABEL_SCHEMES[scheme][band]
    station = assessment.get("station") or NOT_SPECIFIED
    captain = assessment.get("captain") or assessment.get("completed_by") or NOT_SPECIFIED
    date = assessment.get("date") or NOT_SPECIFIED
    time = assessment.get("time") or NOT_SPECIFIED
    weather = assessment.get("weather") or {}
    mitigations = assessment.get("mitigations") or {}
    mitigation_count = sum(1 for name in RISK_FACTORS if (mitigations.get(name) or "").strip())

    return {
        "to_name": recipient.display_name or "Team Member",
        "to_email": recipient.email,
        "from_name": from_name,
        "reply_to": reply_to,
        "subject": build_subject(band, station),
        "date": date,
        "time": time,
        "station": station,
        "type": assessment.get("type") or NOT_SPECIFIED,
        "captain": captain,
        "score": score,
        "risk_level": risk_level,
        "risk_color": BAND_COLORS[band],
        "temperature": f"{weather.get('temperature', '')}{weather.get('temperature_unit', '')}".strip(),
        "wind": " ".join(p for p in (weather.get("wind", ""), weather.get("wind_direction", "")) if p),
        "humidity": weather.get("humidity", ""),
        "precipitation": weather.get("precipitation", ""),
        "wave_height": weather.get("wave_height", ""),
        "wave_period": weather.get("wave_period", ""),
        "wave_direction": weather.get("wave_direction", ""),
        "weather_alerts": weather.get("alerts", ""),
        "has_mitigations": mitigation_count > 0,
        "mitigation_count": mitigation_count,
        "message": (
            f"A new GAR assessment has been completed for {station} with a risk level of "
            f"{risk_level} (score: {score}). Assessment created by {captain} on {date} at {time}."
        ),
        "assessment_url": assessment_url(app_base_url, assessment_id),
        "app_url": app_base_url,
    }


class NotificationDispatcher:
    """Sends publish notifications, isolating each recipient's failure.

    Sends run concurrently, bounded by ``concurrency``. Delivery is
    at-most-once per recipient per call; nothing is retried.
    """

    def __init__(
        self,
        provider: NotificationProvider,
        app_base_url: str,
        scheme: str = "risk",
        concurrency: int = 5,
        from_name: str = "Fire Department GAR System",
        reply_to: str = "noreply@firedepartment.com",
    ) -> None:
        self.provider = provider
        self.app_base_url = app_base_url
        self.scheme = scheme
        self.concurrency = concurrency
        self.from_name = from_name
        self.reply_to = reply_to

    async def dispatch(
        self,
        assessment: Mapping[str, Any],
        recipients: Iterable[NotificationRecipient],
        assessment_id: str,
    ) -> DispatchResult:
        recipients = list(recipients)
        result = DispatchResult(attempted=len(recipients))
        if not recipients:
            logger.info("notification_no_recipients", assessment_id=assessment_id)
            return result

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _send_one(recipient: NotificationRecipient) -> None:
            params = build_message(
                assessment,
                recipient,
                assessment_id,
                self.app_base_url,
                scheme=self.scheme,
                from_name=self.from_name,
                reply_to=self.reply_to,
            )
            async with semaphore:
                try:
                    await self.provider.send(params)
                except Exception as exc:
                    logger.warning(
                        "notification_send_failed",
                        assessment_id=assessment_id,
                        recipient=recipient.email,
                        error=str(exc),
                    )
                    result.failed[recipient.email] = str(exc)
                    return
            result.sent.append(recipient.email)

        await asyncio.gather(*(_send_one(r) for r in recipients))
        logger.info(
            "notifications_dispatched",
            assessment_id=assessment_id,
            attempted=result.attempted,
            sent=len(result.sent),
            failed=len(result.failed),
        )
        return result

    async def notify_published(
        self,
        assessment: Mapping[str, Any],
        selection: RecipientSelection,
        directory: Iterable[Mapping[str, Any]],
        assessment_id: str,
    ) -> DispatchResult:
        """Resolve ``selection`` against the live directory and dispatch."""
        recipients = resolve_recipients(selection, directory)
        return await self.dispatch(assessment, recipients, assessment_id)


async def send_test_email(provider: NotificationProvider, email: str, app_base_url: str) -> bool:
    """Send a fixed sample notification to check provider configuration."""
    now = datetime.now(timezone.utc)
    params = {
        "to_name": "Test User",
        "to_email": email,
        "from_name": "Fire Department Test System",
        "subject": "GAR notification test",
        "date": now.date().isoformat(),
        "time": now.strftime("%H:%M"),
        "station": "Test Station",
        "type": "Test Assessment",
        "captain": "Test Captain",
        "score": 30,
        "risk_level": "MODERATE RISK",
        "risk_color": "amber",
        "message": "This is a test email from the GAR notification system.",
        "app_url": app_base_url,
    }
    try:
        await provider.send(params)
    except NotificationError as exc:
        logger.warning("test_email_failed", email=email, error=str(exc))
        return False
    return True
