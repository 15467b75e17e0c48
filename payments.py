import time
from typing import Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from errors import PaymentGatewayError, ValidationError


def get_razorpay_client(key_id: str, key_secret: str) -> Optional[razorpay.Client]:
    if not key_id or not key_secret:
        return None
    return razorpay.Client(auth=(key_id, key_secret))


def to_paise(amount) -> int:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError('Invalid amount')
    if value <= 0:
        raise ValidationError('Invalid amount')
    return int(round(value * 100))


def create_gateway_order(client, amount, currency: str = 'INR') -> dict:
    """Create a Razorpay order for ``amount`` rupees; returns id/amount/currency."""
    options = {
        'amount': to_paise(amount),
        'currency': currency or 'INR',
        'receipt': f"receipt_{int(time.time() * 1000)}",
    }
    try:
        order = client.order.create(options)
    except (BadRequestError, GatewayError, ServerError) as e:
        raise PaymentGatewayError(str(e)) from e
    print(f"[SUCCESS] Razorpay order created: {order.get('id')}")
    return {
        'id': order.get('id'),
        'amount': order.get('amount'),
        'currency': order.get('currency'),
    }


def verify_payment_signature(client, order_id: str, payment_id: str, signature: str) -> bool:
    if not (order_id and payment_id and signature):
        return False
    try:
        client.utility.verify_payment_signature({
            'razorpay_order_id': order_id,
            'razorpay_payment_id': payment_id,
            'razorpay_signature': signature,
        })
    except SignatureVerificationError:
        return False
    return True
