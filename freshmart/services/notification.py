import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from freshmart.core.config import settings
from freshmart.models.order import Order

logger = logging.getLogger(__name__)

def send_email(to_email: str, subject: str, body: str) -> bool:
    if not settings.MAIL_ENABLED:
        logger.debug("Mail disabled, not sending '%s' to %s", subject, to_email)
        return False
    try:
        msg = MIMEMultipart()
        msg['From'] = settings.MAIL_FROM
        msg['To'] = to_email
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'html'))

        if settings.MAIL_SSL:
            server = smtplib.SMTP_SSL(settings.MAIL_SERVER, settings.MAIL_PORT, timeout=10)
        else:
            server = smtplib.SMTP(settings.MAIL_SERVER, settings.MAIL_PORT, timeout=10)
            server.starttls()
        with server:
            if settings.MAIL_PASSWORD:
                server.login(settings.MAIL_USERNAME, settings.MAIL_PASSWORD)
            server.sendmail(settings.MAIL_FROM, to_email, msg.as_string())
        logger.info("Email '%s' sent to %s", subject, to_email)
        return True
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send email '%s' to %s", subject, to_email)
        return False


class NotificationService:
    """Best-effort order events; a failed send never affects the order."""

    def order_created(self, order: Order) -> bool:
        lines = "".join(f"• {item.name} x {item.quantity}<br>" for item in order.items)
        body = (
            f"<p>New order <b>{order.id}</b> from {order.username}.</p>"
            f"<p>{lines}</p>"
            f"<p>Total: Rs. {order.final_amount}</p>"
        )
        return send_email(settings.STAFF_NOTIFY_EMAIL, f"New order {order.id}", body)

    def status_changed(self, order: Order, email: str) -> bool:
        if not email:
            return False
        status = getattr(order.status, "value", order.status)
        body = f"<p>Hi {order.username},</p><p>Your order <b>{order.id}</b> is now <b>{status}</b>.</p>"
        return send_email(email, f"Order {order.id}: {status}", body)
