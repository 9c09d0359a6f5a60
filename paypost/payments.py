# paypost/payments.py
from .models import CreateOrderOut, Order, to_minor_units


def build_payment_payload(order: Order, settings) -> CreateOrderOut:
    """Payment initiation data for the configured backend.

    VK Pay gets an embedded widget order with the amount in kopecks; every
    other backend is handled by the frontend payment page.
    """
    if settings.payment_type == "vk_pay":
        return CreateOrderOut(
            order_id=order.id,
            payment_type="vk_pay",
            order={
                "item": f"Размещение поста в группе {order.group_id}",
                "description": f"Публикация поста в сообществе. Текст: {order.text[:100]}...",
                "amount": to_minor_units(order.price),
            },
        )
    return CreateOrderOut(
        order_id=order.id,
        payment_type="external",
        payment_url=f"{settings.frontend_url}/payment/{order.id}",
    )
