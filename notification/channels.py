#!/usr/bin/env python3
"""
Delivery Channels

Pluggable channel implementations behind one interface:
- DeliveryChannel: the plug-in contract, send(destination, payload, correlation_id)
- EmailChannel: validates, rate limits, sanitizes and sends through an
  EmailProvider wrapped in a circuit breaker
- ChannelRegistry: channels registered by the name used in Notification.channels

A channel raises ChannelDeliveryError (or a subclass) on failure; returning
normally means the send succeeded.

Usage:
    registry = ChannelRegistry()
    registry.register(EmailChannel(provider=SmtpEmailProvider("smtp.example.com")))
    registry.get('email').send(user_id, payload, correlation_id)
"""

import importlib
import inspect
import logging
import os
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Any, Optional, List, Callable

import requests
from email_validator import validate_email, EmailNotValidError

from notification.circuit_breaker import CircuitBreaker
from notification.exceptions import (
    ChannelDeliveryError,
    CircuitOpenError,
    InvalidDestinationError,
    OutboundRateLimitError,
)
from notification.models import NotificationType, NotificationPriority
from notification.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from notification.templates import render_email

logger = logging.getLogger(__name__)

BOUNCE_DESTINATION = 'email.bounce'
DEFAULT_FROM_EMAIL = 'noreply@taskmanager.com'
DEFAULT_OUTBOUND_RATE_PER_SECOND = 10


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


@dataclass
class DeliveryPayload:
    """What a channel needs to render and send one notification."""
    notification_id: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    channel: str
    destination: str
    provider_message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OutboundEmail:
    to: str
    from_email: str
    subject: str
    html_body: str
    text_body: str
    custom_args: Dict[str, str] = field(default_factory=dict)


@dataclass
class EmailBounce:
    email: str
    reason: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmailProvider(ABC):
    """Downstream email API. send() raises on any failure."""

    name = 'provider'

    @abstractmethod
    def send(self, email: OutboundEmail) -> Optional[str]:
        """Send the email; returns a provider message id when there is one."""


class SmtpEmailProvider(EmailProvider):
    """Email via SMTP with STARTTLS."""

    name = 'smtp'

    def __init__(self, server: str, port: int = 587, username: str = '', password: str = '',
                 timeout_seconds: float = 10.0, use_tls: bool = True):
        self.server = server
        self.port = port
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.use_tls = use_tls

    def send(self, email: OutboundEmail) -> Optional[str]:
        msg = MIMEMultipart('alternative')
        msg['From'] = email.from_email
        msg['To'] = email.to
        msg['Subject'] = email.subject
        for key, value in email.custom_args.items():
            msg[f'X-{key}'] = value
        msg.attach(MIMEText(email.text_body, 'plain', 'utf-8'))
        msg.attach(MIMEText(email.html_body, 'html', 'utf-8'))

        with smtplib.SMTP(self.server, self.port, timeout=self.timeout_seconds) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)
        return None


class SendGridEmailProvider(EmailProvider):
    """Email via the SendGrid v3 HTTP API."""

    name = 'sendgrid'
    API_URL = 'https://api.sendgrid.com/v3/mail/send'

    def __init__(self, api_key: str, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        if not api_key:
            raise ValueError("SendGrid API key is required")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def send(self, email: OutboundEmail) -> Optional[str]:
        payload = {
            'personalizations': [{
                'to': [{'email': email.to}],
                'custom_args': email.custom_args,
            }],
            'from': {'email': email.from_email},
            'subject': email.subject,
            'content': [
                {'type': 'text/plain', 'value': email.text_body},
                {'type': 'text/html', 'value': email.html_body},
            ],
            'tracking_settings': {
                'click_tracking': {'enable': True},
                'open_tracking': {'enable': True},
            },
        }
        response = self.session.post(
            self.API_URL,
            json=payload,
            headers={'Authorization': f'Bearer {self.api_key}'},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        return response.headers.get('X-Message-Id')


class DryRunEmailProvider(EmailProvider):
    """Logs instead of sending (NOTIFICATION_DRY_RUN=true)."""

    name = 'dry_run'

    def __init__(self):
        self.sent: List[OutboundEmail] = []

    def send(self, email: OutboundEmail) -> Optional[str]:
        self.sent.append(email)
        logger.info(f"[DRY RUN] Email to {_mask_email(email.to)}: {email.subject}")
        return None


class DeliveryChannel(ABC):
    """
    Abstract base class for all delivery channels.

    A channel is registered under `name`, the value referenced by
    Notification.channels.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the channel name."""
        pass

    @abstractmethod
    def send(self, destination: str, payload: DeliveryPayload, correlation_id: Optional[str]) -> DeliveryReceipt:
        """
        Send a notification through this channel.

        Args:
            destination: Recipient identity (user id, address, chat id...)
            payload: Rendered content and metadata
            correlation_id: Id tying log lines of one notification together

        Returns:
            DeliveryReceipt on success

        Raises:
            ChannelDeliveryError: On any failure
        """
        pass


class EmailChannel(DeliveryChannel):
    """
    Email delivery channel.

    Order of checks: address syntax, outbound rate, then the provider call
    through the circuit breaker. The first two fail without touching the
    breaker or the provider.
    """

    def __init__(
        self,
        provider: EmailProvider,
        breaker: Optional[CircuitBreaker] = None,
        outbound_limiter: Optional[RateLimiter] = None,
        from_email: str = DEFAULT_FROM_EMAIL,
        recipient_resolver: Optional[Callable[[str], Optional[str]]] = None,
        bounce_transport=None
    ):
        self.provider = provider
        self.breaker = breaker or CircuitBreaker(name='email')
        self.outbound_limiter = outbound_limiter or SlidingWindowRateLimiter(
            points=DEFAULT_OUTBOUND_RATE_PER_SECOND, duration_seconds=1.0
        )
        self.from_email = from_email
        self.recipient_resolver = recipient_resolver
        self.bounce_transport = bounce_transport

    @property
    def name(self) -> str:
        return 'email'

    def resolve_address(self, destination: str, payload: DeliveryPayload) -> Optional[str]:
        address = payload.metadata.get('email')
        if not address and self.recipient_resolver:
            address = self.recipient_resolver(destination)
        return address or destination

    def send(self, destination: str, payload: DeliveryPayload, correlation_id: Optional[str]) -> DeliveryReceipt:
        address = self.resolve_address(destination, payload)
        try:
            address = validate_email(address, check_deliverability=False).normalized
        except EmailNotValidError as e:
            logger.warning(f"[{correlation_id}] Invalid email address for {payload.notification_id}: {e}")
            raise InvalidDestinationError(f"Invalid email address: {_mask_email(address)}", channel=self.name) from e

        decision = self.outbound_limiter.consume(self.name)
        if not decision.allowed:
            logger.warning(f"[{correlation_id}] Outbound email rate limit reached, retry in {decision.retry_after_seconds:.2f}s")
            raise OutboundRateLimitError("Outbound email rate limit exceeded", channel=self.name)

        content = render_email(payload.type, payload.title, payload.message, payload.metadata)
        email = OutboundEmail(
            to=address,
            from_email=self.from_email,
            subject=content.subject,
            html_body=content.html_body,
            text_body=content.text_body,
            custom_args={
                'correlationId': correlation_id or '',
                'priority': payload.priority.value,
                'notificationId': payload.notification_id,
                'templateId': content.template_id,
            },
        )

        try:
            message_id = self.breaker.call(self.provider.send, email)
        except CircuitOpenError:
            raise
        except Exception as e:
            logger.error(f"[{correlation_id}] {self.provider.name} failed sending to {_mask_email(address)}: {e}")
            raise ChannelDeliveryError(f"Email provider error: {e}", channel=self.name) from e

        logger.info(f"[{correlation_id}] Email sent to {_mask_email(address)} ({content.template_id})")
        return DeliveryReceipt(channel=self.name, destination=address, provider_message_id=message_id)

    def handle_bounce(self, bounce: EmailBounce) -> None:
        """Record a provider bounce and publish it for downstream consumers."""
        logger.warning(f"Email bounce for {_mask_email(bounce.email)}: {bounce.reason}")
        if self.bounce_transport is None:
            return
        try:
            self.bounce_transport.publish(BOUNCE_DESTINATION, {
                'email': bounce.email,
                'reason': bounce.reason,
                'timestamp': bounce.timestamp.isoformat(),
            })
        except Exception as e:
            logger.error(f"Failed to publish bounce event: {e}")


class ChannelRegistry:
    """
    Registry of delivery channels keyed by name.

    Extra channel classes can be loaded from "package.module:ClassName" paths,
    e.g. from the NOTIFICATION_CHANNEL_MODULES environment variable
    (comma-separated). Loaded classes must take no constructor arguments.
    """

    def __init__(self, channels: Optional[List[DeliveryChannel]] = None):
        self._channels: Dict[str, DeliveryChannel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: DeliveryChannel, name: Optional[str] = None) -> None:
        if not isinstance(channel, DeliveryChannel):
            raise ValueError("Channel must extend DeliveryChannel")
        key = (name or channel.name).lower()
        self._channels[key] = channel
        logger.info(f"Registered delivery channel: {key}")

    def get(self, name: str) -> DeliveryChannel:
        """
        Raises:
            KeyError: If no channel is registered under name
        """
        channel = self._channels.get(name.lower())
        if channel is None:
            raise KeyError(f"Unknown channel: {name}. Available: {', '.join(self.names())}")
        return channel

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._channels

    def names(self) -> List[str]:
        return sorted(self._channels)

    def load_from_module(self, module_path: str) -> DeliveryChannel:
        """Instantiate and register a channel class given as "module:ClassName"."""
        if ':' not in module_path:
            raise ValueError(f"Expected 'module:ClassName', got {module_path!r}")
        module_name, class_name = module_path.split(':', 1)
        module = importlib.import_module(module_name)
        channel_class = getattr(module, class_name)
        if not (inspect.isclass(channel_class) and issubclass(channel_class, DeliveryChannel)):
            raise ValueError(f"{module_path} is not a DeliveryChannel subclass")
        channel = channel_class()
        self.register(channel)
        return channel

    def load_from_env(self, env_var: str = 'NOTIFICATION_CHANNEL_MODULES') -> int:
        loaded = 0
        for module_path in os.environ.get(env_var, '').split(','):
            module_path = module_path.strip()
            if not module_path:
                continue
            try:
                self.load_from_module(module_path)
                loaded += 1
            except (ImportError, AttributeError, ValueError, TypeError) as e:
                logger.error(f"Failed to load channel from {module_path}: {e}")
        return loaded
