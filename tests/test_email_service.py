from storefront.config import Settings
from storefront.email_service import EmailSender, send_confirmation_safely

SETTINGS = Settings(
    smtp_host="smtp.example.com",
    smtp_port=2525,
    smtp_username="shop@example.com",
    smtp_password="app-password",
    email_from_name="Example Shop",
)


def make_order(mocker, email="alice@example.com"):
    order = mocker.Mock()
    order.id = 7
    order.currency = "USD"
    order.total_amount = 3098
    order.customer_email = email
    item = mocker.Mock()
    item.quantity = 2
    item.product_name = "Mug"
    item.unit_price = 1549
    order.items = [item]
    return order


def test_order_confirmation_goes_out_over_smtp(mocker):
    smtp = mocker.patch("smtplib.SMTP")

    EmailSender(SETTINGS).send_order_confirmation(make_order(mocker))

    smtp.assert_called_once_with("smtp.example.com", 2525, timeout=10.0)
    conn = smtp.return_value.__enter__.return_value
    conn.starttls.assert_called_once()
    conn.login.assert_called_once_with("shop@example.com", "app-password")
    message = conn.send_message.call_args.args[0]
    assert message["To"] == "alice@example.com"
    assert message["Subject"] == "Order Confirmation #7"
    assert message["From"] == "Example Shop <shop@example.com>"
    assert "2 x Mug @ 15.49 USD" in message.get_content()
    assert "Total: 30.98 USD" in message.get_content()


def test_confirmation_skipped_when_email_disabled(mocker):
    sender = EmailSender(Settings())
    send = mocker.patch.object(sender, "send")
    load_order = mocker.Mock()

    send_confirmation_safely(sender, load_order, 7)

    load_order.assert_not_called()
    send.assert_not_called()


def test_confirmation_skipped_without_customer_email(mocker):
    sender = mocker.Mock(enabled=True)

    send_confirmation_safely(sender, lambda order_id: make_order(mocker, email=None), 7)

    sender.send_order_confirmation.assert_not_called()


def test_confirmation_errors_are_swallowed(mocker):
    sender = mocker.Mock(enabled=True)
    sender.send_order_confirmation.side_effect = OSError("connection refused")

    send_confirmation_safely(sender, lambda order_id: make_order(mocker), 7)

    sender.send_order_confirmation.assert_called_once()
