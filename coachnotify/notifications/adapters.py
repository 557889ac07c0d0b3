"""Delivery adapters, one per channel."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from coachnotify.core.config import AppSettings
from coachnotify.models.notification import Channel, NotificationCategory, NotificationPriority
from coachnotify.schemas.preference import ContactDetails

LOGGER = logging.getLogger("coachnotify.notifications.adapters")

_PERMANENT_SES_ERRORS = {"MessageRejected", "MailFromDomainNotVerifiedException", "InvalidParameterValue"}
_PERMANENT_SNS_ERRORS = {"InvalidParameter", "InvalidParameterValue", "OptedOut"}


class DeliveryError(RuntimeError):
    """Base class for adapter failures."""


class TransientDeliveryError(DeliveryError):
    """The provider may accept the message if we try again later."""


class DeliveryTimeoutError(TransientDeliveryError):
    """The provider did not answer within the configured timeout."""


class PermanentDeliveryError(DeliveryError):
    """Retrying cannot succeed (bad address, missing contact details, rejected content)."""


@dataclass(frozen=True)
class DeliveryMessage:
    """Everything an adapter needs to deliver one notification on one channel."""

    notification_id: uuid.UUID
    user_id: str
    channel: Channel
    category: NotificationCategory
    priority: NotificationPriority
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    contact: ContactDetails = field(default_factory=ContactDetails)


@dataclass
class DeliveryReceipt:
    provider_message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class DeliveryAdapter(Protocol):
    """Transport abstraction for a single channel."""

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        ...


class LoggingAdapter(DeliveryAdapter):
    """No-op adapter used when a channel has no provider configured."""

    def __init__(self, channel: Channel) -> None:
        self._channel = channel

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:  # noqa: D401
        LOGGER.info(
            "notification_delivery_logged",
            extra={
                "notification_id": str(message.notification_id),
                "channel": self._channel.value,
                "user_id": message.user_id,
            },
        )
        return DeliveryReceipt(metadata={"transport": "log"})


class InAppAdapter(DeliveryAdapter):
    """In-app delivery has no external call; the real-time push is the effect."""

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        return DeliveryReceipt(metadata={"transport": "in_app"})


class SesEmailAdapter(DeliveryAdapter):
    """Sends email through AWS SES."""

    def __init__(self, *, sender: str, region_name: str, timeout_seconds: float) -> None:
        self._sender = sender
        self._client = boto3.client(
            "ses",
            region_name=region_name,
            config=Config(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        if not message.contact.email:
            raise PermanentDeliveryError("user has no email address")
        try:
            response = self._client.send_email(
                Source=self._sender,
                Destination={"ToAddresses": [message.contact.email]},
                Message={
                    "Subject": {"Data": message.title, "Charset": "UTF-8"},
                    "Body": {"Text": {"Data": message.body, "Charset": "UTF-8"}},
                },
                Tags=[{"Name": "category", "Value": message.category.value}],
            )
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise DeliveryTimeoutError(str(exc)) from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _PERMANENT_SES_ERRORS:
                raise PermanentDeliveryError(f"ses rejected message: {code}") from exc
            raise TransientDeliveryError(f"ses error: {code or exc}") from exc
        except BotoCoreError as exc:
            raise TransientDeliveryError(str(exc)) from exc
        return DeliveryReceipt(provider_message_id=response.get("MessageId"))


class SnsSmsAdapter(DeliveryAdapter):
    """Sends SMS through AWS SNS direct publish."""

    def __init__(self, *, region_name: str, timeout_seconds: float) -> None:
        self._client = boto3.client(
            "sns",
            region_name=region_name,
            config=Config(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        if not message.contact.phone:
            raise PermanentDeliveryError("user has no phone number")
        sms_type = "Transactional" if message.priority in (NotificationPriority.HIGH, NotificationPriority.URGENT) else "Promotional"
        try:
            response = self._client.publish(
                PhoneNumber=message.contact.phone,
                Message=f"{message.title}: {message.body}",
                MessageAttributes={
                    "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": sms_type},
                },
            )
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise DeliveryTimeoutError(str(exc)) from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _PERMANENT_SNS_ERRORS:
                raise PermanentDeliveryError(f"sns rejected message: {code}") from exc
            raise TransientDeliveryError(f"sns error: {code or exc}") from exc
        except BotoCoreError as exc:
            raise TransientDeliveryError(str(exc)) from exc
        return DeliveryReceipt(provider_message_id=response.get("MessageId"))


class HttpPushAdapter(DeliveryAdapter):
    """Posts push notifications to an HTTP push gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        token: Optional[str],
        timeout_seconds: float,
        client: Optional[httpx.Client] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout_seconds)

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        if not message.contact.push_tokens:
            raise PermanentDeliveryError("user has no registered push tokens")
        payload = {
            "tokens": message.contact.push_tokens,
            "title": message.title,
            "body": message.body,
            "priority": "high" if message.priority in (NotificationPriority.HIGH, NotificationPriority.URGENT) else "normal",
            "data": {**message.data, "notification_id": str(message.notification_id), "category": message.category.value},
        }
        try:
            response = self._client.post("/send", json=payload)
        except httpx.TimeoutException as exc:
            raise DeliveryTimeoutError(str(exc)) from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(str(exc)) from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryError(f"push gateway returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentDeliveryError(f"push gateway rejected message with {response.status_code}")
        body = response.json() if response.content else {}
        return DeliveryReceipt(provider_message_id=body.get("id"), metadata={"status_code": response.status_code})


def build_adapters(settings: AppSettings) -> Dict[Channel, DeliveryAdapter]:
    """Resolve one adapter per channel, logging-only where no provider is configured."""

    adapters: Dict[Channel, DeliveryAdapter] = {
        Channel.EMAIL: LoggingAdapter(Channel.EMAIL),
        Channel.PUSH: LoggingAdapter(Channel.PUSH),
        Channel.SMS: LoggingAdapter(Channel.SMS),
        Channel.IN_APP: InAppAdapter(),
    }
    if settings.ses_sender:
        adapters[Channel.EMAIL] = SesEmailAdapter(
            sender=settings.ses_sender,
            region_name=settings.aws_region,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    if settings.sms_enabled:
        adapters[Channel.SMS] = SnsSmsAdapter(
            region_name=settings.aws_region,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    if settings.push_gateway_url:
        adapters[Channel.PUSH] = HttpPushAdapter(
            base_url=settings.push_gateway_url,
            token=settings.push_gateway_token,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    return adapters
