from billcycle.services.payment_gateway import ManualGateway, PaymentGateway


def get_payment_gateway() -> PaymentGateway:
    return ManualGateway()
