"""Dynamic text construction: prompt sections, order summaries and image follow-ups."""

from collections.abc import Iterable
from typing import Optional

from orderbot.prompts.system_prompts import MENU_IMAGE_FOLLOW_UP
from orderbot.schemas.catalog_schema import MenuItem, PaymentMethod, StoryText
from orderbot.schemas.order_schema import OrderPayload
from orderbot.utils import display_flavor


def format_menu(items: Iterable[MenuItem], currency: str = "R$") -> str:
    """Menu grouped by category, in first-seen category order."""
    by_category: dict[str, list[MenuItem]] = {}
    for item in items:
        by_category.setdefault(item.category, []).append(item)

    lines: list[str] = []
    for category, category_items in by_category.items():
        lines.append(f"\n{category}:")
        for item in category_items:
            lines.append(f"- *{item.name}*: {item.description} - {currency}{item.price:.2f}")
            if item.origin_story:
                lines.append(f"  Inspiração: {item.origin_story}")
    return "\n".join(lines) + "\n" if lines else ""


def format_payment_methods(methods: Iterable[PaymentMethod]) -> str:
    lines = [
        f"- {m.name}{' (pode precisar de troco)' if m.requires_change else ''}" for m in methods
    ]
    return "\n".join(lines) + "\n" if lines else ""


def build_enrichment_info(
    kinds: Iterable[str],
    story: Optional[StoryText],
    menu_items: list[MenuItem],
    payment_methods: list[PaymentMethod],
    currency: str = "R$",
) -> str:
    """Extra context requested by the model through ``[REQUEST_*]`` markers."""
    kinds = set(kinds)
    sections = []
    if "HISTORY" in kinds and story and story.content:
        sections.append(f"# HISTÓRIA DA PIZZARIA\n{story.content}")
    if "MENU" in kinds and menu_items:
        sections.append(f"# CARDÁPIO COMPLETO\n{format_menu(menu_items, currency)}")
    if "PAYMENT" in kinds and payment_methods:
        sections.append(f"# FORMAS DE PAGAMENTO\n{format_payment_methods(payment_methods)}")
    return "\n\n".join(sections)


def _item_lines(order: OrderPayload, currency: str) -> list[str]:
    return [
        f"- {item.quantity}x *{item.name}*: {currency} {item.price:.2f}"
        f" = {currency} {item.subtotal:.2f}"
        for item in order.items
    ]


def build_order_summary(order: OrderPayload, currency: str = "R$") -> str:
    """Read-back of a staged order asking the customer to answer SIM."""
    lines = ["Vamos conferir seu pedido:", ""]
    lines.extend(_item_lines(order, currency))
    lines.extend([
        "",
        f"*Endereço de entrega:* {order.address}",
        f"*Forma de pagamento:* {order.payment_method}",
        "",
        f"*Total:* {currency} {order.total_value:.2f}",
        "",
        "Está tudo correto? Responda SIM para confirmar ou me diga o que gostaria de modificar.",
    ])
    return "\n".join(lines)


def build_confirmation_text(
    order: OrderPayload,
    delivery_minutes: int,
    currency: str = "R$",
) -> str:
    """Confirmation message for a committed order."""
    lines = ["🎉 *PEDIDO CONFIRMADO* 🎉", "", "*Itens:*"]
    lines.extend(_item_lines(order, currency))
    lines.extend([
        "",
        f"*Valor Total:* {currency} {order.total_value:.2f}",
        f"*Endereço de Entrega:* {order.address}",
        f"*Forma de Pagamento:* {order.payment_method}",
        "",
        f"Seu pedido será entregue em aproximadamente {delivery_minutes} minutos. "
        "Obrigado pela preferência! 🍕",
    ])
    return "\n".join(lines)


def build_address_registered_reply(address: str, payment_prompt: str) -> str:
    return f"Perfeito! Endereço registrado: {address}. {payment_prompt}"


# ------------------------------------------------------------------ #
# Image captions and follow-up questions
# ------------------------------------------------------------------ #

def item_caption(item: MenuItem) -> str:
    return f"*{item.name}*: {item.description}"


def composite_caption(first: MenuItem, second: MenuItem, fallback: Optional[str] = None) -> str:
    """Caption for a split pizza. ``fallback`` is "aproximada" or "parcial"."""
    caption = f"Pizza meio {display_flavor(first.name)} e meio {display_flavor(second.name)}"
    if fallback:
        caption += f" (visualização {fallback})"
    return caption


def image_follow_up(state: int, caption: str, is_menu: bool, is_dessert: bool) -> str:
    """Text to send with the first image when the model wrote no TEXT block."""
    if is_menu:
        return MENU_IMAGE_FOLLOW_UP
    if state == 0:
        return f"Aqui está a imagem da {caption}. Gostaria de pedir esta pizza? Ou prefere ver outras opções?"
    if state == 1:
        if is_dessert:
            return f"Esta é a nossa {caption}. Gostaria de pedir agora?"
        return f"Esta é a nossa {caption}. Você gostaria dela inteira ou meio a meio com outro sabor?"
    if state == 2:
        return f"Aqui está a {caption}. Gostaria de pedir mais alguma pizza ou podemos prosseguir com o pedido?"
    if state == 3:
        return f"Esta é a deliciosa {caption}. Gostaria de adicionar alguma bebida ao seu pedido?"
    return f"Esta é a nossa {caption}. O que você gostaria de fazer a seguir?"


def image_question_suffix(state: int, is_menu: bool, is_dessert: bool) -> Optional[str]:
    """Question appended to model text that does not end in one, in states 0 to 3."""
    if state not in (0, 1, 2, 3):
        return None
    if is_menu:
        return "Qual sabor você gostaria de experimentar?"
    if state == 0:
        return "Gostaria de pedir agora?"
    if state == 1:
        if is_dessert:
            return "Gostaria de pedir agora?"
        return "Você prefere ela inteira ou meio a meio com outro sabor?"
    if state == 2:
        return "Deseja mais alguma pizza ou podemos prosseguir?"
    return "Gostaria de adicionar alguma bebida ao pedido?"
