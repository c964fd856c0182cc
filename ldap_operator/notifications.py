"""
Event recording and e-mail notifications for the LDAP Operator.

Reconcilers report what happened to an object through an EventRecorder. Every
event is logged and recorded against the object in the store, where repeats of
the same (object, reason, message) are counted rather than duplicated.
Warning events for failures can additionally be sent by e-mail over SMTP.
"""

import smtplib
import threading
import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, List, Optional

from ldap_operator.resources import Resource, ObjectKey
from ldap_operator.resources.base import utcnow

logger = logging.getLogger(__name__)

EVENT_NORMAL = 'Normal'
EVENT_WARNING = 'Warning'

REASON_CREATED = 'Created'
REASON_READY = 'Ready'
REASON_NOT_READY = 'NotReady'
REASON_FAILED = 'Failed'
REASON_DELETED = 'Deleted'

# Implicit TLS; every other port is plain SMTP upgraded with STARTTLS
SMTPS_PORT = 465


@dataclass
class Event:
    key: ObjectKey
    type: str
    reason: str
    message: str
    count: int = 1
    first_timestamp: datetime = field(default_factory=utcnow)
    last_timestamp: datetime = field(default_factory=utcnow)
    
    @property
    def dedup_key(self) -> tuple:
        return (self.key, self.reason, self.message)


def _recipients(config: Dict[str, Any]) -> List[str]:
    recipients = config.get('email_to') or []
    return [recipients] if isinstance(recipients, str) else list(recipients)


def _open_smtp(host: str, port: int) -> smtplib.SMTP:
    if port == SMTPS_PORT:
        return smtplib.SMTP_SSL(host, port)
    return smtplib.SMTP(host, port)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Deliver a plain-text message to the configured recipients.
    
    Args:
        subject: Subject line
        body: Message text
        config: The notifications section of the configuration
    
    Returns:
        True once the SMTP server accepted the message. Delivery problems are
        logged and reported as False; they never interrupt reconciliation.
    """
    if not config.get('enable_email', False):
        logger.debug("E-mail notifications are disabled")
        return False
    
    host = config.get('smtp_server')
    port = config.get('smtp_port', 587)
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from', username)
    recipients = _recipients(config)
    
    if not host:
        logger.error("Cannot send e-mail: notifications.smtp_server is not set")
        return False
    if not recipients:
        logger.error("Cannot send e-mail: notifications.email_to is empty")
        return False
    
    message = MIMEMultipart()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))
    
    logger.debug(f"Sending '{subject}' to {len(recipients)} recipient(s) through {host}:{port}")
    starttls = port != SMTPS_PORT and config.get('smtp_tls', True)
    try:
        with closing(_open_smtp(host, port)) as connection:
            if starttls:
                connection.starttls()
            if username and password:
                connection.login(username, password)
            connection.sendmail(sender, recipients, message.as_string())
            connection.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Sending '{subject}' through {host}:{port} failed: {e}")
        return False
    
    logger.info(f"Sent e-mail notification '{subject}'")
    return True


def send_failure_notification(event: Event, config: Dict[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """E-mail a Failed event, with additional_info listed under the message."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure e-mails are turned off")
        return False
    
    subject = f"LDAP Operator Alert: {event.key} {event.reason}"
    lines = [
        f"{event.key} could not be reconciled.",
        "",
        f"Time:    {event.last_timestamp.strftime('%Y-%m-%d %H:%M:%S %Z')}",
        f"Reason:  {event.reason}",
        f"Message: {event.message}",
    ]
    lines.extend(f"{name}: {value}" for name, value in (additional_info or {}).items())
    lines.extend([
        "",
        "No further e-mail is sent for this failure until the object is Ready again.",
        "It is retried on every resync; its status conditions and the operator log show the current state.",
    ])
    return send_email(subject, '\n'.join(lines), config)


class EventRecorder:
    """Logs events and records them against their object in the store."""
    
    def __init__(self, store, notifications_config: Optional[Dict[str, Any]] = None):
        self.store = store
        self.config = notifications_config or {}
        # Failures already e-mailed; repeats of the same event are only counted
        self._notified = set()
        self._lock = threading.Lock()
    
    def record(self, obj: Resource, event_type: str, reason: str, message: str) -> Event:
        event = Event(key=obj.key, type=event_type, reason=reason, message=message)
        
        log = logger.warning if event_type == EVENT_WARNING else logger.info
        log(f"{event.key}: {reason}: {message}")
        
        self.store.record_event(event)
        
        if event_type == EVENT_WARNING and reason == REASON_FAILED and self._first_failure(event):
            send_failure_notification(event, self.config, {
                'Generation': obj.metadata.generation,
                'Namespace': obj.metadata.namespace,
            })
        
        return event
    
    def _first_failure(self, event: Event) -> bool:
        with self._lock:
            if event.dedup_key in self._notified:
                return False
            self._notified.add(event.dedup_key)
            return True
    
    def forget(self, key: ObjectKey) -> None:
        """Drop the failures remembered for key, so that the next one is e-mailed again."""
        with self._lock:
            self._notified = {dedup_key for dedup_key in self._notified if dedup_key[0] != key}
    
    def normal(self, obj: Resource, reason: str, message: str) -> Event:
        return self.record(obj, EVENT_NORMAL, reason, message)
    
    def warning(self, obj: Resource, reason: str, message: str) -> Event:
        return self.record(obj, EVENT_WARNING, reason, message)
