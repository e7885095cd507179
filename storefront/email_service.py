import smtplib
from email.message import EmailMessage

from storefront.logging_config import get_logger

log = get_logger(__name__)


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency}"


class EmailSender:
    """Plain SMTP sender for transactional mail."""

    def __init__(self, settings, timeout: float = 10.0):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.from_address = settings.email_from_address or settings.smtp_username
        self.from_name = settings.email_from_name
        self.enabled = settings.email_enabled
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str):
        message = EmailMessage()
        message["From"] = f"{self.from_name} <{self.from_address}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.username, self.password)
            smtp.send_message(message)

    def send_order_confirmation(self, order):
        lines = "\n".join(
            f"  {item.quantity} x {item.product_name} @ {format_amount(item.unit_price, order.currency)}"
            for item in order.items
        )
        body = (
            "Thank you for your order! We're processing it now and will notify you when it ships.\n\n"
            f"Order Number: {order.id}\n\n"
            f"{lines}\n\n"
            f"Total: {format_amount(order.total_amount, order.currency)}\n"
        )
        self.send(order.customer_email, f"Order Confirmation #{order.id}", body)


def send_confirmation_safely(sender, load_order, order_id: int):
    """
    Fire-and-forget wrapper run as a background task after a payment completes.

    Errors are logged and swallowed: the webhook that triggered the mail has
    already been answered, and a failed mail must never make the provider retry.
    """
    try:
        if sender is None or not sender.enabled:
            log.info(f"[Order: {order_id}] Email disabled, skipping order confirmation.")
            return
        order = load_order(order_id)
        if not order.customer_email:
            log.warning(f"[Order: {order_id}] No customer email on file, skipping order confirmation.")
            return
        sender.send_order_confirmation(order)
        log.info(f"[Order: {order_id}] Order confirmation sent to {order.customer_email}.")
    except Exception as e:
        log.error(f"[Order: {order_id}] Failed to send order confirmation: {e}")
