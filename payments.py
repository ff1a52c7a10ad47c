import logging
from dataclasses import dataclass

import stripe
from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass
class StripeConfig:
    api_key: str
    currency: str = "usd"


class PaymentGatewayError(RuntimeError):
    pass


class StripeGateway:
    def __init__(self, cfg: StripeConfig):
        self.cfg = cfg

    def create_payment_intent(self, amount: int) -> str:
        """Create a card PaymentIntent for ``amount`` (in cents) and return its client secret."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.cfg.currency,
                payment_method_types=["card"],
                api_key=self.cfg.api_key,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(e.user_message or str(e)) from e
        logger.info("Created payment intent %s for %s %s", intent.id, amount, self.cfg.currency)
        return intent.client_secret


def get_payment_gateway(request: Request):
    return request.app.state.payment_gateway
