"""
Offline console demo: runs a full pizza order without any API keys.

Drives the real orchestrator (state machine, guardrails, tagged block
parser, image compositing, order commit) against offline collaborators:
a rule-based stand-in for the language model, a postal code table, a
speech synthesizer that only records what it would say, and a catalog
whose images are generated locally with Pillow.

Usage:
    python console_demo.py
    python console_demo.py --scenario pedido
    python console_demo.py --scenario meio-a-meio
"""

import argparse
import asyncio
import base64
import json
import re
from io import BytesIO
from typing import Any, Optional

from PIL import Image

from orderbot.agents.orchestrator import OrderOrchestrator
from orderbot.config import settings
from orderbot.conversation import detectors
from orderbot.prompts.prompt_assembler import PromptAssembler
from orderbot.schemas.catalog_schema import BotConfiguration, MenuItem, PaymentMethod, StoryText
from orderbot.schemas.message_schema import InboundMessage, OutboundResponse
from orderbot.tools.address import AddressService
from orderbot.tools.catalog import CatalogImageResolver
from orderbot.tools.imaging import ImageFetcher
from orderbot.tools.orders import StagedOrderRegistry
from orderbot.tools.store import InMemoryStore

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_IDENTITY = "5511999990000@c.us"

DEMO_TEMPLATE = """Você é {{BOT_NAME}}, {{BOT_DESCRIPTION}}.
Personalidade: {{PERSONALIDADE}}
Estado atual: {{CURRENT_STATE}}
Endereço validado: {{ENDERECO_VALIDADO.formattedAddress}}

CARDÁPIO:
{{CARDAPIO}}
FORMAS DE PAGAMENTO:
{{FORMAS_PAGAMENTO}}"""

DEMO_CEPS = {
    "01310100": {
        "cep": "01310-100", "street": "Avenida Paulista", "neighborhood": "Bela Vista",
        "city": "São Paulo", "state": "SP",
    },
    "01305000": {
        "cep": "01305-000", "street": "Rua Augusta", "neighborhood": "Consolação",
        "city": "São Paulo", "state": "SP",
    },
}


def _data_url(image: Image.Image, fmt: str = "PNG") -> str:
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    mime = "png" if fmt == "PNG" else "jpeg"
    return f"data:image/{mime};base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


def _pizza_images(color: tuple[int, int, int]) -> tuple[str, str, str]:
    """General, left-half (transparent right side) and right-half assets."""
    size = (120, 120)
    general = Image.new("RGBA", size, (*color, 255))
    left = Image.new("RGBA", size, (0, 0, 0, 0))
    left.paste(Image.new("RGBA", (60, 120), (*color, 255)), (0, 0))
    right = Image.new("RGBA", size, (*color, 255))
    return _data_url(general), _data_url(left), _data_url(right)


def build_demo_store() -> InMemoryStore:
    store = InMemoryStore()
    flavors = [
        ("Pizza Salgada", "Pizza Amazonas", "Jambu, tucupi e queijo", 62.0, (34, 139, 34)),
        ("Pizza Salgada", "Pizza Calabresa", "Calabresa fatiada e cebola", 48.0, (178, 34, 34)),
        ("Pizza Salgada", "Pizza Marguerita", "Tomate, muçarela e manjericão", 45.9, (220, 20, 60)),
        ("Pizza Doce", "Pizza Dolce Banana", "Banana, canela e doce de leite", 52.0, (218, 165, 32)),
    ]
    for category, name, description, price, color in flavors:
        general, left, right = _pizza_images(color)
        store.add_menu_item(MenuItem(
            name=name, description=description, category=category, price=price,
            image_general=general, image_left_half=left, image_right_half=right,
        ))
    for name, change in [("PIX", False), ("Cartão de crédito", False),
                         ("Cartão de débito", False), ("Dinheiro", True), ("VR", False)]:
        store.add_payment_method(PaymentMethod(name=name, requires_change=change))
    store.set_bot_configuration(BotConfiguration(
        name="Beppe",
        description="atendente virtual da Pizzaria Paulistana",
        personality="Simpático e objetivo",
        prompt_template=DEMO_TEMPLATE,
        welcome_message=settings.store.welcome_message,
        menu_image=_data_url(Image.new("RGB", (200, 280), (245, 222, 179)), "JPEG"),
        menu_image_caption="Cardápio da casa",
    ))
    store.set_story(StoryText(title="Nossa história", content="Fundada em 1987 no Bixiga."))
    return store


# ------------------------------------------------------------------ #
# Offline collaborators
# ------------------------------------------------------------------ #

class DemoAddressService(AddressService):
    """Postal code lookup answered from a fixed table."""

    async def _fetch(self, cep: str) -> Optional[dict[str, Any]]:
        return DEMO_CEPS.get(cep)


class DemoSpeech:
    """Records what would be spoken and returns a fake asset URL."""

    def __init__(self) -> None:
        self.spoken: list[str] = []

    async def synthesize(self, text: str) -> str:
        self.spoken.append(text)
        return f"{settings.services.media_url_prefix}/audio_demo_{len(self.spoken)}.mp3"


class ScriptedModel:
    """Rule-based stand-in for the language model, driven by the conversation state."""

    _STATE_RE = re.compile(r"Estado atual: (\d)")
    _VALIDATED_RE = re.compile(r"Endereço validado: (.+)")
    _REGISTERED_RE = re.compile(r"Endereço registrado: (.+?)\. ")

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def complete(self, messages: list[dict[str, str]]) -> str:
        system = messages[0]["content"]
        state_match = self._STATE_RE.search(system)
        state = int(state_match.group(1)) if state_match else 0
        user_text = messages[-1]["content"].split("\n\nLEMBRETE:")[0]

        if state == 0:
            return "[TEXT_FORMAT]Ótima escolha! Você quer a pizza inteira ou meio a meio?[/END]"
        if state == 1:
            return "[TEXT_FORMAT]Perfeito. Deseja mais uma pizza ou podemos finalizar?[/END]"
        if state == 2:
            return "[TEXT_FORMAT]Certo! Gostaria de alguma bebida para acompanhar?[/END]"
        if state == 3:
            return "[TEXT_FORMAT]Anotado. Qual é o CEP do endereço de entrega?[/END]"
        if state == 4:
            return "[TEXT_FORMAT]Endereço anotado![/END]"
        menu = await self._store.list_available_menu_items()
        order = json.dumps({"pedido": self._order(messages, system, menu)}, ensure_ascii=False)
        if state == 6 and detectors.is_affirmative(user_text):
            return f"[CONFIRMATION_FORMAT][/END][JSON_FORMAT]{order}[/END]"
        return f"[TEXT_FORMAT]Vou montar seu pedido.[/END][JSON_FORMAT]{order}[/END]"

    def _order(self, messages: list[dict[str, str]], system: str, menu: list[MenuItem]) -> dict:
        user_texts = " ".join(m["content"] for m in messages if m["role"] == "user")
        named = detectors.mentioned_items(user_texts, menu)
        items = [{"nome": i.name, "quantidade": 1, "preco": i.price} for i in named[:1]]

        address = ""
        for message in reversed(messages):
            match = self._REGISTERED_RE.search(message["content"])
            if message["role"] == "assistant" and match:
                address = match.group(1)
                break
        if not address:
            validated = self._VALIDATED_RE.search(system)
            address = validated.group(1).split(",")[0].strip() if validated else ""

        payment = ""
        for message in reversed(messages):
            if message["role"] == "user":
                payment = detectors.payment_from_text(message["content"]) or ""
                if payment:
                    break
        return {"items": items, "endereco": address, "pagamento": payment}


# ------------------------------------------------------------------ #
# Console session
# ------------------------------------------------------------------ #

class ConsoleSession:
    """Runs the orchestrator turn by turn in the terminal."""

    SCENARIOS: dict[str, list[str]] = {
        "pedido": [
            "Oi! Quero ver o cardápio",
            "quero uma pizza amazonas",
            "inteira",
            "pode finalizar",
            "sem bebida",
            "meu CEP é 01305-000",
            "pix",
            "pix",
            "1234",
            "pix",
            "sim",
            "quero ouvir o áudio do pedido",
        ],
        "meio-a-meio": [
            "me mostra a pizza amazonas meio a meio com a dolce banana",
            "quero ver a foto da calabresa",
            "novo pedido",
        ],
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self) -> None:
        self.store = build_demo_store()
        self.speech = DemoSpeech()
        self.orchestrator = OrderOrchestrator(
            store=self.store,
            completion=ScriptedModel(self.store),
            speech=self.speech,
            address_service=DemoAddressService(),
            image_resolver=CatalogImageResolver(self.store, ImageFetcher()),
            registry=StagedOrderRegistry(),
            assembler=PromptAssembler(settings.store.currency_symbol, history_window=40),
            welcome_message=settings.store.welcome_message,
            currency=settings.store.currency_symbol,
            delivery_minutes=settings.store.delivery_minutes,
        )

    def bot_say(self, response: OutboundResponse) -> None:
        color = GREEN if response.success else RED
        if response.text:
            print(f"{color}{BOLD}[Bot]{RESET} {color}{response.text}{RESET}")
        if response.voice_asset_ref:
            print(f"{YELLOW}  [áudio] {response.voice_asset_ref}{RESET}")
        for image in response.all_images:
            kind = "gerada" if image.url.startswith("data:image/jpeg") else "catálogo"
            print(f"{YELLOW}  [imagem {kind}] {image.id}: {image.caption}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    async def _turn(self, text: str) -> None:
        response = await self.orchestrator.handle_message(
            InboundMessage(identity=DEMO_IDENTITY, text=text)
        )
        self.bot_say(response)
        self.system_log(f"State: {response.state}")

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  ORDER BOT - {title}{RESET}")
        print(f"{BOLD}  Store: {settings.store.name}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    async def _summary(self) -> None:
        orders = await self.store.list_orders()
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{DIM}  Orders committed: {len(orders)}{RESET}")
        for order in orders:
            print(f"{DIM}  {order.ref}: {order.address} / {order.payment_method} / "
                  f"{settings.store.currency_symbol} {order.total_value:.2f}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        for step in steps:
            print(f"\n{BLUE}[Cliente] {RESET}{step}")
            await self._turn(step)
        await self._summary()

    async def run(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        while True:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Cliente] {RESET}")).strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                break
            if len(user_input) > self.MAX_INPUT_LENGTH:
                print(f"{GREEN}[Bot] Mensagem muito longa. Pode resumir?{RESET}")
                continue
            await self._turn(user_input)
        await self._summary()


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    args = parser.parse_args()

    session = ConsoleSession()
    if args.scenario:
        asyncio.run(session.run_scenario(args.scenario))
    else:
        asyncio.run(session.run())


if __name__ == "__main__":
    main()
