"""Shared test fixtures and helpers."""

from io import BytesIO
from typing import Any, Optional, Union

import pytest
from PIL import Image

from orderbot.agents.orchestrator import OrderOrchestrator
from orderbot.conversation.guardrails import GuardrailPipeline
from orderbot.conversation.state_machine import ConversationStateMachine
from orderbot.errors import ExternalServiceError
from orderbot.prompts.context_cache import ContextCache
from orderbot.schemas.catalog_schema import BotConfiguration, MenuItem, PaymentMethod, StoryText
from orderbot.schemas.conversation_schema import AddressComponents, AddressData, Conversation
from orderbot.schemas.order_schema import OrderItem, OrderPayload
from orderbot.tools.address import AddressService
from orderbot.tools.catalog import CatalogImageResolver
from orderbot.tools.orders import OrderCommitter, StagedOrderRegistry
from orderbot.tools.store import InMemoryStore

IDENTITY = "5511999990000"

RED = (255, 0, 0)
BLUE = (0, 0, 255)
GREEN = (0, 128, 0)

TEMPLATE = (
    "Você é {{BOT_NAME}}. Estado: {{CURRENT_STATE}}.\n"
    "CARDÁPIO:\n{{CARDAPIO}}\nPAGAMENTO:\n{{FORMAS_PAGAMENTO}}\n"
    "Endereço: {{ENDERECO_VALIDADO.formattedAddress}}"
)

CEP_TABLE = {
    "01305000": {
        "cep": "01305-000", "street": "Rua Augusta", "neighborhood": "Consolação",
        "city": "São Paulo", "state": "SP",
    },
    "20040020": {
        "cep": "20040-020", "street": "Rua da Assembleia", "neighborhood": "Centro",
        "city": "Rio de Janeiro", "state": "RJ",
    },
}


# ------------------------------------------------------------------ #
# Image helpers
# ------------------------------------------------------------------ #

def png_bytes(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def solid_png(color: tuple[int, int, int], size: tuple[int, int] = (40, 40)) -> bytes:
    return png_bytes(Image.new("RGBA", size, (*color, 255)))


def left_half_png(color: tuple[int, int, int], size: tuple[int, int] = (40, 40)) -> bytes:
    """Left half painted, right half fully transparent."""
    image = Image.new("RGBA", size, (0, 0, 0, 0))
    image.paste(Image.new("RGBA", (size[0] // 2, size[1]), (*color, 255)), (0, 0))
    return png_bytes(image)


# ------------------------------------------------------------------ #
# Offline collaborators
# ------------------------------------------------------------------ #

class FakeCompletion:
    """Returns scripted replies in order and records every request."""

    def __init__(self, replies: Optional[list[Union[str, Exception]]] = None) -> None:
        self.replies = list(replies or [])
        self.calls: list[list[dict[str, str]]] = []

    async def complete(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        if not self.replies:
            return "[TEXT_FORMAT]Certo![/END]"
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeSpeech:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> str:
        self.texts.append(text)
        if self.fail:
            raise ExternalServiceError("speech", "unavailable")
        return f"/api/media/audio_{len(self.texts)}.mp3"


class FakeAddressService(AddressService):
    """CEP lookups answered from CEP_TABLE."""

    def __init__(self, table: Optional[dict[str, dict[str, Any]]] = None) -> None:
        super().__init__()
        self.table = CEP_TABLE if table is None else table
        self.lookups: list[str] = []

    async def _fetch(self, cep: str) -> Optional[dict[str, Any]]:
        self.lookups.append(cep)
        return self.table.get(cep)


class FakeFetcher:
    """URL -> bytes table; unknown URLs fail like an unreachable host."""

    def __init__(self, images: Optional[dict[str, bytes]] = None) -> None:
        self.images = images or {}
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> bytes:
        self.fetched.append(url)
        if url not in self.images:
            raise ExternalServiceError("image", f"download failed for {url}")
        return self.images[url]


# ------------------------------------------------------------------ #
# Domain factories
# ------------------------------------------------------------------ #

def make_menu_items() -> list[MenuItem]:
    return [
        MenuItem(
            name="Pizza Amazonas", description="Jambu e tucupi", category="Pizza Salgada",
            price=62.0, image_general="https://img.test/amazonas.jpg",
            image_left_half="https://img.test/amazonas-left.png",
            image_right_half="https://img.test/amazonas-right.png",
        ),
        MenuItem(
            name="Pizza Calabresa", description="Calabresa e cebola", category="Pizza Salgada",
            price=48.0, image_general="https://img.test/calabresa.jpg",
        ),
        MenuItem(
            name="Pizza Dolce Banana", description="Banana e canela", category="Pizza Doce",
            price=52.0, image_general="https://img.test/banana.jpg",
            image_left_half="https://img.test/banana-left.png",
            image_right_half="https://img.test/banana-right.png",
        ),
        MenuItem(
            name="Pizza Portuguesa", description="Presunto e ovo", category="Pizza Salgada",
            price=50.0, available=False, image_general="https://img.test/portuguesa.jpg",
        ),
    ]


def make_order(
    address: str = "Rua Augusta, 1234, São Paulo",
    payment: str = "PIX",
    items: Optional[list[OrderItem]] = None,
) -> OrderPayload:
    return OrderPayload(
        items=items if items is not None else [OrderItem(name="Pizza Amazonas", quantity=2, price=62.0)],
        address=address,
        payment_method=payment,
    )


def make_address(street: str = "Rua Augusta") -> AddressData:
    return AddressData(
        formatted_address=f"{street}, Consolação, São Paulo - SP, 01305-000",
        components=AddressComponents(
            street=street, neighborhood="Consolação", city="São Paulo", state="SP", cep="01305-000"
        ),
    )


def make_conversation(state: int = 0, **kwargs: Any) -> Conversation:
    return Conversation(identity=IDENTITY, state=state, **kwargs)


async def seed_conversation(store: InMemoryStore, state: int = 0, **kwargs: Any) -> Conversation:
    conversation = make_conversation(state, **kwargs)
    await store.save_conversation(conversation)
    return conversation


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def menu_items():
    return make_menu_items()


@pytest.fixture
def bot_config():
    return BotConfiguration(
        name="Beppe",
        description="atendente da pizzaria",
        personality="simpático",
        prompt_template=TEMPLATE,
        welcome_message="Bem-vindo à Pizzaria!",
        menu_image="https://img.test/cardapio.jpg",
        menu_image_caption="Nosso cardápio",
        confirmation_image="https://img.test/confirmado.jpg",
    )


@pytest.fixture
def store(menu_items, bot_config):
    store = InMemoryStore(
        menu_items=menu_items,
        payment_methods=[
            PaymentMethod(name="PIX"),
            PaymentMethod(name="Dinheiro", requires_change=True),
            PaymentMethod(name="Cheque", active=False),
        ],
        bot_config=bot_config,
        story=StoryText(title="História", content="Fundada em 1987 no Bixiga."),
    )
    yield store
    store.reset()


@pytest.fixture
def conversation():
    return make_conversation()


@pytest.fixture
def state_machine(conversation):
    return ConversationStateMachine(conversation)


@pytest.fixture
def guardrail_pipeline():
    return GuardrailPipeline("Só aceito texto ou áudio.")


@pytest.fixture
def registry():
    return StagedOrderRegistry()


@pytest.fixture
def committer(store, registry):
    return OrderCommitter(store, registry, delivery_minutes=50, currency="R$")


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def address_service():
    return FakeAddressService()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def make_orchestrator(store, completion, speech, address_service, fetcher, registry):
    """Factory so tests can override single collaborators."""

    def factory(**overrides: Any) -> OrderOrchestrator:
        image_resolver = overrides.pop(
            "image_resolver", CatalogImageResolver(store, overrides.pop("fetcher", fetcher))
        )
        options: dict[str, Any] = {
            "store": store,
            "completion": completion,
            "speech": speech,
            "address_service": address_service,
            "image_resolver": image_resolver,
            "cache": ContextCache(store),
            "registry": registry,
            "unsupported_media_message": "Só aceito texto ou áudio.",
        }
        options.update(overrides)
        return OrderOrchestrator(**options)

    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
