from __future__ import annotations

from safeguard.schemas.alert import AlertSeverity, AlertType, EmergencyAlert
from safeguard.schemas.notification import NotificationContent, NotificationMethod, UrgencyLevel

_TEMPLATES = {
    AlertType.CRISIS_DETECTED: (
        "🚨 CRISIS ALERT - Immediate Attention Required",
        "Crisis detected for user. {description}. Location: {location}. Please respond immediately.",
        "Acknowledge and take immediate action",
    ),
    AlertType.PANIC_BUTTON: (
        "🆘 PANIC BUTTON ACTIVATED",
        "User has activated panic button. {description}. Location: {location}. Immediate intervention required.",
        "Contact user immediately",
    ),
    AlertType.MANUAL_ESCALATION: (
        "⚠️ Manual Escalation Required",
        "Manual escalation requested. {description}. Please review and take appropriate action.",
        "Review and respond",
    ),
}

_DEFAULT_TEMPLATE = ("🔔 Emergency Alert", "{description}", "Please respond")


def describe_location(alert: EmergencyAlert) -> str:
    loc = alert.context.location
    if loc is None:
        return "Unknown"
    if loc.address:
        return loc.address
    return f"{loc.latitude:.5f}, {loc.longitude:.5f}"


def urgency_for(severity: AlertSeverity) -> UrgencyLevel:
    if severity in (AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY):
        return UrgencyLevel.CRITICAL
    return UrgencyLevel.HIGH


def build_content(alert: EmergencyAlert, method: NotificationMethod) -> NotificationContent:
    """Deterministic subject/body for an alert on a given channel."""
    subject, template, call_to_action = _TEMPLATES.get(alert.alert_type, _DEFAULT_TEMPLATE)
    description = (alert.description or alert.title).rstrip(".")
    message = template.format(description=description, location=describe_location(alert))

    # the alert-type subject is kept on every channel
    if method == NotificationMethod.SMS:
        message = f"{subject}\n{message}\n{call_to_action}"
    elif method == NotificationMethod.PHONE:
        message = f"This is an automated emergency alert. {message}"

    return NotificationContent(
        subject=subject,
        message=message,
        urgency_level=urgency_for(alert.severity),
        call_to_action=call_to_action,
    )
