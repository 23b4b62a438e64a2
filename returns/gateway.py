"""
Refund gateway (Razorpay).

Kept behind a small class so the refund trigger never talks to the SDK
directly and tests can swap the gateway out.
"""

import logging
from decimal import Decimal

from django.conf import settings

logger = logging.getLogger('returns')


class RazorpayRefundGateway:

    def __init__(self, key_id=None, key_secret=None):
        config = settings.RAZORPAY
        self.key_id = key_id or config.get('KEY_ID')
        self.key_secret = key_secret or config.get('KEY_SECRET')
        self._client = None

    @property
    def client(self):
        if self._client is None:
            import razorpay

            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def refund(self, payment_id, amount, notes=None, receipt=None):
        """
        Refund `amount` rupees against a captured payment.
        Returns the gateway's refund dict (id, status, amount in paise, ...).
        """
        refund_data = {
            'amount': int((Decimal(amount) * 100).quantize(Decimal('1'))),
            'speed': 'normal',
            'notes': notes or {},
        }
        if receipt:
            refund_data['receipt'] = receipt

        refund = self.client.payment.refund(payment_id, refund_data)
        logger.info(f"Refund initiated: {refund['id']} for payment {payment_id}")
        return refund


def get_refund_gateway():
    return RazorpayRefundGateway()
