import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Dict, Iterable, Optional

import requests

from errors import NotificationError
from storage import utc_now

TWILIO_MESSAGES_URL = 'https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json'

STATUS_MESSAGES = {
    'processing': 'We have received your order and are preparing it.',
    'confirmed': 'Your order has been confirmed and will be packed shortly.',
    'shipped': 'Good news! Your order is on its way.',
    'delivered': 'Your order has been delivered. We hope you love it!',
    'cancelled': 'Your order has been cancelled. Any payment made will be refunded.',
}


def _money(value) -> str:
    try:
        return f"₹{float(value):,.2f}"
    except (TypeError, ValueError):
        return f"₹{value}"


def _address_html(address) -> str:
    if isinstance(address, dict):
        return (f"{address.get('address', '')}<br>"
                f"{address.get('city', '')}, {address.get('state', '')}<br>"
                f"{address.get('pincode', '')}")
    return str(address or '')


def render_order_confirmation(order: dict, site_url: str) -> str:
    rows = ''.join([f'''
                <tr>
                    <td class="cell"><strong>{item.get('name')}</strong></td>
                    <td class="cell center">{item.get('quantity')}</td>
                    <td class="cell right">{_money(item.get('price'))}</td>
                </tr>''' for item in order.get('items') or []])
    return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <style>
                body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
                .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
                .header {{ background-color: #d97706; color: white; padding: 20px; text-align: center; }}
                .content {{ background-color: #f9f9f9; padding: 20px; }}
                .order-info {{ background-color: white; padding: 15px; margin: 10px 0; border-radius: 5px; }}
                .cell {{ padding: 10px; border-bottom: 1px solid #e5e7eb; }}
                .center {{ text-align: center; }}
                .right {{ text-align: right; }}
                .total {{ font-size: 18px; font-weight: bold; color: #d97706; margin-top: 15px; }}
                .footer {{ text-align: center; padding: 20px; color: #666; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header">
                    <h1>Order Confirmation</h1>
                    <p>Thank you for choosing Nurvi Jewel!</p>
                </div>
                <div class="content">
                    <h2>Hello {order.get('customerName')}!</h2>
                    <div class="order-info">
                        <h3>Order #{order.get('orderId')}</h3>
                        <p><strong>Order Date:</strong> {order.get('orderDate')}</p>
                        <p><strong>Payment Status:</strong> {order.get('paymentStatus')}</p>
                        <p><strong>Expected Delivery:</strong> {order.get('estimatedDelivery')}</p>
                    </div>
                    <div class="order-info">
                        <table width="100%">
                            <tr><th align="left">Product</th><th>Qty</th><th align="right">Price</th></tr>
                            {rows}
                        </table>
                        <div class="total">Total Amount: {_money(order.get('totalAmount'))}</div>
                    </div>
                    <div class="order-info">
                        <h3>Shipping Address</h3>
                        <p>{_address_html(order.get('shippingAddress'))}</p>
                    </div>
                    <p>Track your order at <a href="{site_url}/orders">{site_url}/orders</a></p>
                </div>
                <div class="footer">
                    <p>Questions? Contact us at support@nurvijewel.com</p>
                </div>
            </div>
        </body>
        </html>
        """


def render_status_update(order: dict, site_url: str) -> str:
    status = order.get('orderStatus', '')
    tracking = ''
    if order.get('trackingNumber'):
        tracking = f"<p><strong>Tracking Number:</strong> {order['trackingNumber']}</p>"
    return f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2>Hello {order.get('customerName')},</h2>
                <p>{STATUS_MESSAGES.get(status, f'Your order status is now {status}.')}</p>
                <p><strong>Order:</strong> #{order.get('orderId')}</p>
                <p><strong>Status:</strong> {status.title()}</p>
                {tracking}
                <p>Track your order at <a href="{site_url}/orders">{site_url}/orders</a></p>
            </div>
        </body>
        </html>
        """


EMAIL_TEMPLATES = {
    'order_confirmation': (lambda order: f"Order Confirmation #{order.get('orderId')} - Nurvi Jewel",
                           render_order_confirmation),
    'status_update': (lambda order: f"Order #{order.get('orderId')} is {order.get('orderStatus')} - Nurvi Jewel",
                      render_status_update),
}


def sms_text(template: str, order: dict, site_url: str) -> str:
    if template == 'status_update':
        text = f"Nurvi Jewel: order #{order.get('orderId')} is now {order.get('orderStatus')}."
        if order.get('trackingNumber'):
            text += f" Tracking: {order['trackingNumber']}."
        return text
    items = '\n'.join(f"- {item.get('name')} (Qty: {item.get('quantity')})" for item in order.get('items') or [])
    return (f"Hi {order.get('customerName')}! Your Nurvi Jewel order #{order.get('orderId')} "
            f"has been confirmed.\n{items}\nTotal: {_money(order.get('totalAmount'))}\n"
            f"Expected Delivery: {order.get('estimatedDelivery')}\n"
            f"Track your order: {site_url}/orders")


class EmailSender:
    def __init__(self, server: str, port: int, user: str, password: str, from_address: str = '',
                 site_url: str = '', smtp_factory: Callable = smtplib.SMTP):
        self.server = server
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address or user
        self.site_url = site_url
        self.smtp_factory = smtp_factory

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, template: str, order: dict, recipient: Optional[str] = None) -> None:
        if not self.configured:
            raise NotificationError('Email credentials not configured')
        if template not in EMAIL_TEMPLATES:
            raise NotificationError(f'Unknown email template: {template}')
        subject, render = EMAIL_TEMPLATES[template]

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject(order)
        msg['From'] = f'"Nurvi Jewel" <{self.from_address}>'
        msg['To'] = recipient or order.get('customerEmail')
        msg.attach(MIMEText(render(order, self.site_url), 'html'))

        try:
            server = self.smtp_factory(self.server, self.port, timeout=30)
            try:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f'Error sending {template} email: {e}') from e


class SmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, site_url: str = '',
                 http=requests):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.site_url = site_url
        self.http = http

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, template: str, order: dict, recipient: Optional[str] = None) -> str:
        if not self.configured:
            raise NotificationError('SMS credentials not configured')
        to = recipient or order.get('customerPhone')
        if not to:
            raise NotificationError('Order has no phone number')
        try:
            resp = self.http.post(
                TWILIO_MESSAGES_URL.format(sid=self.account_sid),
                data={'To': to, 'From': self.from_number, 'Body': sms_text(template, order, self.site_url)},
                auth=(self.account_sid, self.auth_token),
                timeout=10,
            )
        except requests.exceptions.RequestException as e:
            raise NotificationError(f'SMS gateway unreachable: {e}') from e

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400:
            raise NotificationError(f"SMS sending failed: {data.get('message', resp.status_code)}")
        return data.get('sid', '')


class NotificationDispatcher:
    """Drains pending outbox records from one or more order stores.

    A failed send leaves the record pending with ``attempts`` bumped until
    ``max_attempts`` is reached, after which it is marked ``failed``.
    """

    def __init__(self, stores: Iterable, email_sender: Optional[EmailSender] = None,
                 sms_sender: Optional[SmsSender] = None, max_attempts: int = 5,
                 clock: Callable = utc_now):
        self.stores = list(stores)
        self.senders = {'email': email_sender, 'sms': sms_sender}
        self.max_attempts = max_attempts
        self.clock = clock
        self._lock = threading.Lock()

    def process_pending(self) -> Dict[str, int]:
        totals = {'sent': 0, 'retrying': 0, 'failed': 0}
        # one drain at a time per process
        with self._lock:
            for store in self.stores:
                for record in store.pending_notifications():
                    outcome = self._deliver(store, record)
                    totals[outcome] += 1
        return totals

    def _deliver(self, store, record: dict) -> str:
        attempts = int(record.get('attempts') or 0) + 1
        try:
            sender = self.senders.get(record.get('channel'))
            if sender is None:
                raise NotificationError(f"No sender for channel {record.get('channel')}")
            order = store.get(record.get('orderId'))
            if order is None:
                raise NotificationError(f"Order {record.get('orderId')} not found")
            sender.send(record.get('template'), order, record.get('recipient'))
        except NotificationError as e:
            return self._record_failure(store, record, attempts, e)
        except Exception as e:
            print(f"[ERROR] Unexpected error delivering notification {record.get('id')}: {e}")
            return self._record_failure(store, record, attempts, e)

        store.mark_notification(record['id'], {
            'status': 'sent',
            'attempts': attempts,
            'lastError': None,
            'sentAt': self.clock().isoformat(),
        })
        print(f"[SUCCESS] {record.get('channel')} notification sent for order {record.get('orderId')}")
        return 'sent'

    def _record_failure(self, store, record: dict, attempts: int, error: Exception) -> str:
        status = 'failed' if attempts >= self.max_attempts else 'pending'
        store.mark_notification(record['id'], {
            'status': status,
            'attempts': attempts,
            'lastError': str(error),
        })
        print(f"[WARN] {record.get('channel')} notification for {record.get('orderId')} "
              f"failed (attempt {attempts}): {error}")
        return 'failed' if status == 'failed' else 'retrying'

    def dispatch_in_background(self) -> threading.Thread:
        def run():
            try:
                self.process_pending()
            except Exception as e:
                print(f"[ERROR] Notification dispatch failed: {e}")

        worker = threading.Thread(target=run, name='notification-dispatch')
        worker.daemon = True
        worker.start()
        return worker
