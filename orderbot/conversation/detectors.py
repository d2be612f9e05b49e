"""
Keyword and pattern detectors over customer and model text.

All matching is accent-insensitive and word-aware: "vr" matches the meal
voucher but not "favor", "sim" matches the affirmative but not "simples".
The state machine composes these into per-state transition detectors; the
guardrails use them for turn intercepts.
"""

import re
from collections.abc import Iterable, Sequence
from typing import Optional

from orderbot.schemas.catalog_schema import MenuItem
from orderbot.utils import display_flavor, fold

CEP_RE = re.compile(r"\b\d{5}-?\d{3}\b")
_NUMBER_TOKEN_RE = re.compile(r"(?<![\d-])\d+(?![\d-])")
_NUMBER_ONLY_RE = re.compile(r"^\s*(?:n[º°o.]?\s*)?(\d{1,6})\s*[.!]?\s*$", re.IGNORECASE)
_PUNCTUATION_RE = re.compile(r"[^\w\s]")

FLAVOR_WORDS = ("pizza", "pizzas", "pedido", "quero", "manda")
WHOLE_OR_SPLIT_WORDS = ("inteira", "inteiro", "meio", "metade", "meia")
SIZE_OR_SPLIT_PROMPT_WORDS = ("tamanho", "grande", "media", "pequena", "inteira", "meio a meio")
FINALIZE_WORDS = ("finalizar", "mais uma", "outra pizza")
BEVERAGE_WORDS = ("sim", "nao", "refrigerante", "guarana", "coca", "sem bebida")
PAYMENT_WORDS = ("debito", "credito", "dinheiro", "pix", "vr")
AFFIRMATIVE_WORDS = ("sim", "confirmo", "correto", "ok", "pode ser")
RESET_PHRASES = ("reiniciar", "comecar de novo", "novo pedido")
AUDIO_WORDS = ("audio", "ouvir", "escutar")
AUDIO_SUBJECT_WORDS = ("pedido", "confirmacao", "confirmado")
VIEW_WORDS = ("imagem", "foto", "fotos", "mostra", "mostrar", "ver", "veja", "como e")
MENU_WORDS = ("cardapio", "menu")
SPLIT_WORDS = ("meio a meio", "metade", "meio", "meia")

_PATTERN_CACHE: dict[tuple[str, ...], re.Pattern] = {}


def _pattern(words: Sequence[str]) -> re.Pattern:
    key = tuple(words)
    pattern = _PATTERN_CACHE.get(key)
    if pattern is None:
        alternatives = "|".join(
            re.escape(fold(w)).replace(" ", r"\s+") for w in sorted(key, key=len, reverse=True)
        )
        pattern = re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)")
        _PATTERN_CACHE[key] = pattern
    return pattern


def contains_any(text: Optional[str], words: Sequence[str]) -> bool:
    """True when any word or phrase occurs in ``text`` as a whole word."""
    if not text or not words:
        return False
    return bool(_pattern(words).search(fold(text)))


def find_cep(text: Optional[str]) -> Optional[str]:
    """Return the first postal code (CEP) in ``text``, normalized to digits."""
    if not text:
        return None
    match = CEP_RE.search(text)
    return match.group(0).replace("-", "") if match else None


def has_number_token(text: Optional[str]) -> bool:
    return bool(text) and bool(_NUMBER_TOKEN_RE.search(text))


def number_only(text: Optional[str]) -> Optional[str]:
    """The house number when the whole message is just a number ("1234", "nº 12")."""
    if not text:
        return None
    match = _NUMBER_ONLY_RE.match(text)
    return match.group(1) if match else None


def is_reset_request(text: Optional[str]) -> bool:
    """The whole message is one of the reset phrases."""
    if not text:
        return False
    normalized = " ".join(_PUNCTUATION_RE.sub(" ", fold(text)).split())
    return normalized in RESET_PHRASES


def is_affirmative(text: Optional[str]) -> bool:
    return contains_any(text, AFFIRMATIVE_WORDS)


def mentions_payment(text: Optional[str]) -> bool:
    return contains_any(text, PAYMENT_WORDS)


def mentions_card_without_type(text: Optional[str]) -> bool:
    """Customer said "cartão" but not whether credit or debit."""
    return contains_any(text, ("cartao", "cartoes")) and not contains_any(
        text, ("credito", "debito")
    )


def payment_from_text(text: Optional[str]) -> Optional[str]:
    """Map free text to a payment method label, or None."""
    folded = fold(text or "")
    if contains_any(folded, ("pix",)):
        return "PIX"
    if contains_any(folded, ("credito",)):
        return "Cartão de crédito"
    if contains_any(folded, ("debito",)):
        return "Cartão de débito"
    if contains_any(folded, ("dinheiro",)):
        return "Dinheiro"
    if contains_any(folded, ("vr",)):
        return "VR"
    return None


def is_audio_confirmation_request(text: Optional[str]) -> bool:
    return contains_any(text, AUDIO_WORDS) and contains_any(text, AUDIO_SUBJECT_WORDS)


def is_audio_request(text: Optional[str]) -> bool:
    return contains_any(text, AUDIO_WORDS)


def mentioned_items(text: Optional[str], menu_items: Iterable[MenuItem]) -> list[MenuItem]:
    """Menu items named in ``text``, in order of first mention."""
    if not text:
        return []
    folded = fold(text)
    hits: list[tuple[int, MenuItem]] = []
    for item in menu_items:
        names = {fold(item.name), fold(display_flavor(item.name))} - {"", "pizza"}
        positions = [
            match.start()
            for match in (_pattern((name,)).search(folded) for name in names)
            if match
        ]
        if positions:
            hits.append((min(positions), item))
    hits.sort(key=lambda hit: hit[0])
    seen: set[str] = set()
    ordered = []
    for _, item in hits:
        if item.identifier not in seen:
            seen.add(item.identifier)
            ordered.append(item)
    return ordered


def detect_image_request(text: Optional[str], menu_items: Sequence[MenuItem]) -> Optional[list[str]]:
    """
    Image identifiers the customer asked to see, or None.

    Requires a view keyword. A menu keyword wins over item names; two items
    plus a split keyword produce one composite identifier.
    """
    if not contains_any(text, VIEW_WORDS):
        return None
    if contains_any(text, MENU_WORDS):
        return ["cardapio"]

    named = mentioned_items(text, menu_items)
    if len(named) >= 2 and contains_any(text, SPLIT_WORDS):
        return [f"{named[0].identifier}+{named[1].identifier}"]
    if named:
        return [item.identifier for item in named]
    return None
