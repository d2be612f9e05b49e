"""End-to-end turn tests for the order orchestrator with offline collaborators."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from orderbot.conversation.state_machine import OrderState
from orderbot.errors import ExternalServiceError
from orderbot.prompts.system_prompts import (
    AUDIO_UNAVAILABLE_REPLY,
    COMMIT_NUMBER_REPLY,
    NO_ORDER_FOR_AUDIO_REPLY,
    PAYMENT_OPTIONS_REPLY,
    STAGING_NUMBER_REPLY,
    TECHNICAL_PROBLEM_REPLY,
)
from orderbot.schemas.conversation_schema import Role
from orderbot.schemas.message_schema import InboundMessage
from tests.conftest import (
    IDENTITY,
    FakeCompletion,
    FakeSpeech,
    make_address,
    make_order,
    seed_conversation,
)

ORDER_JSON = (
    '[JSON_FORMAT]{"pedido": {"items": [{"nome": "Pizza Amazonas", "quantidade": 2, "preco": 62}],'
    ' "endereco": "Rua Augusta, 1234, São Paulo", "pagamento": "PIX"}}[/END]'
)
DIGITLESS_ORDER_JSON = (
    '[JSON_FORMAT]{"pedido": {"items": [{"nome": "Pizza Amazonas", "quantidade": 1, "preco": 62}],'
    ' "endereco": "Rua Augusta", "pagamento": "PIX"}}[/END]'
)
CONFIRMATION_REPLY = "[TEXT_FORMAT]Perfeito![/END][CONFIRMATION_FORMAT][/END]" + ORDER_JSON


def inbound(text: str = "", **kwargs) -> InboundMessage:
    return InboundMessage(identity=IDENTITY, text=text, **kwargs)


async def stored(store):
    return await store.latest_conversation(IDENTITY)


class SlowCompletion:
    async def complete(self, messages):
        await asyncio.sleep(1)
        return "[TEXT_FORMAT]tarde demais[/END]"


class ConcurrencyProbe:
    """Tracks how many completions run at the same time."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    async def complete(self, messages):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return "[TEXT_FORMAT]Ok[/END]"


class TestBasicTurns:
    @pytest.mark.asyncio
    async def test_first_contact_creates_conversation(self, orchestrator, store, completion):
        response = await orchestrator.handle_message(inbound("boa noite"))
        assert response.success
        assert response.text == "Certo!"
        assert response.state == OrderState.FLAVOR_SELECTION

        conversation = await stored(store)
        assert [m.role for m in conversation.messages] == [Role.USER, Role.BOT]
        assert completion.calls[0][0]["role"] == "system"
        assert "Você é Beppe" in completion.calls[0][0]["content"]

    @pytest.mark.asyncio
    async def test_detector_advances_state(self, orchestrator, store):
        response = await orchestrator.handle_message(inbound("quero uma pizza"))
        assert response.state == OrderState.WHOLE_OR_SPLIT
        assert (await stored(store)).state == OrderState.WHOLE_OR_SPLIT

    @pytest.mark.asyncio
    async def test_identity_is_normalized(self, orchestrator, store):
        await orchestrator.handle_message(InboundMessage(identity="5511 99999-0000@c.us", text="oi"))
        assert await stored(store) is not None

    @pytest.mark.asyncio
    async def test_untagged_model_reply_is_delivered(self, make_orchestrator):
        orchestrator = make_orchestrator(completion=FakeCompletion(["Olá! Qual sabor?"]))
        response = await orchestrator.handle_message(inbound("oi"))
        assert response.text == "Olá! Qual sabor?"

    @pytest.mark.asyncio
    async def test_stale_conversation_replaced(self, orchestrator, store):
        old = await seed_conversation(
            store, 3, started_at=datetime.now(timezone.utc) - timedelta(hours=5)
        )
        response = await orchestrator.handle_message(inbound("oi"))
        assert response.state == OrderState.FLAVOR_SELECTION
        assert (await stored(store)).id != old.id


class TestSessionIntercepts:
    @pytest.mark.asyncio
    async def test_reset_starts_over(self, orchestrator, store, completion):
        old = await seed_conversation(store, 3)
        response = await orchestrator.handle_message(inbound("reiniciar"))

        assert response.text == "Bem-vindo à Pizzaria!"
        assert response.state == OrderState.FLAVOR_SELECTION
        assert completion.calls == []
        conversations = store.conversations_for(IDENTITY)
        assert [c.id for c in conversations][0] == old.id
        assert len(conversations) == 2

    @pytest.mark.asyncio
    async def test_reset_drops_staged_order(self, orchestrator, registry):
        registry.put(IDENTITY, make_order())
        await orchestrator.handle_message(inbound("novo pedido"))
        assert registry.get(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_unsupported_media(self, orchestrator, completion):
        response = await orchestrator.handle_message(inbound(media_kind="image"))
        assert response.text == "Só aceito texto ou áudio."
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_media_uses_configured_message(self, make_orchestrator, store, bot_config):
        store.set_bot_configuration(
            bot_config.model_copy(update={"unsupported_media_message": "Só texto, por favor!"})
        )
        response = await make_orchestrator().handle_message(inbound(media_kind="image"))
        assert response.text == "Só texto, por favor!"

    @pytest.mark.asyncio
    async def test_media_caption_with_complete_order_is_staged(self, orchestrator, store):
        response = await orchestrator.handle_message(inbound(
            "uma calabresa no pix, Rua Augusta, 1234, CEP 01305-000", media_kind="image"
        ))
        assert response.state == OrderState.ORDER_CONFIRMATION
        assert response.text.startswith("Vamos conferir seu pedido:")
        conversation = await stored(store)
        assert conversation.pending_order.items[0].name == "Pizza Calabresa"
        assert conversation.pending_order.address.startswith("Rua Augusta, 1234")

    @pytest.mark.asyncio
    async def test_media_caption_without_number(self, orchestrator, store):
        response = await orchestrator.handle_message(inbound(
            "uma calabresa no pix, CEP 01305-000", media_kind="image"
        ))
        assert response.state == OrderState.DELIVERY_ADDRESS
        assert "NÚMERO" in response.text
        assert (await stored(store)).draft_order is not None


class TestAddressAndPayment:
    @pytest.mark.asyncio
    async def test_postal_code_captured(self, orchestrator, store, address_service):
        await seed_conversation(store, 4)
        response = await orchestrator.handle_message(inbound("meu cep é 01305-000"))

        assert address_service.lookups == ["01305000"]
        assert response.state == OrderState.PAYMENT_METHOD
        conversation = await stored(store)
        assert conversation.address_data.components.street == "Rua Augusta"

    @pytest.mark.asyncio
    async def test_bare_house_number_completes_address(self, orchestrator, store, completion):
        await seed_conversation(store, 4, address_data=make_address())
        response = await orchestrator.handle_message(inbound("1234"))

        assert response.state == OrderState.PAYMENT_METHOD
        assert "Rua Augusta, 1234" in response.text
        assert response.text.endswith(PAYMENT_OPTIONS_REPLY)
        assert completion.calls == []
        conversation = await stored(store)
        assert conversation.payment_prompted is True
        assert conversation.address_data.formatted_address.startswith("Rua Augusta, 1234")

    @pytest.mark.asyncio
    async def test_house_number_fills_draft_order(self, orchestrator, store):
        await seed_conversation(store, 4, draft_order=make_order(address="Rua Augusta"))
        await orchestrator.handle_message(inbound("77"))
        conversation = await stored(store)
        assert conversation.draft_order.address == "Rua Augusta, 77"

    @pytest.mark.asyncio
    async def test_payment_options_prompted_once(self, orchestrator, store, completion):
        await seed_conversation(store, 5)
        first = await orchestrator.handle_message(inbound("ok"))
        assert first.text == PAYMENT_OPTIONS_REPLY
        assert completion.calls == []

        await orchestrator.handle_message(inbound("hmm"))
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_card_type_clarified(self, orchestrator, store):
        await seed_conversation(store, 5, payment_prompted=True)
        response = await orchestrator.handle_message(inbound("vou pagar no cartão"))
        assert "crédito ou débito" in response.text
        assert response.state == OrderState.PAYMENT_METHOD


class TestStagingAndCommit:
    @pytest.mark.asyncio
    async def test_model_order_is_staged(self, make_orchestrator, store, registry):
        orchestrator = make_orchestrator(
            completion=FakeCompletion(["[TEXT_FORMAT]Anotado[/END]" + ORDER_JSON])
        )
        await seed_conversation(store, 5, payment_prompted=True)
        response = await orchestrator.handle_message(inbound("pix"))

        assert response.state == OrderState.ORDER_CONFIRMATION
        assert "*Total:* R$ 124.00" in response.text
        assert registry.get(IDENTITY) is not None
        assert await store.list_orders() == []

    @pytest.mark.asyncio
    async def test_digitless_order_returns_to_address(self, make_orchestrator, store):
        orchestrator = make_orchestrator(
            completion=FakeCompletion(["[TEXT_FORMAT]Anotado[/END]" + DIGITLESS_ORDER_JSON])
        )
        await seed_conversation(store, 5, payment_prompted=True)
        response = await orchestrator.handle_message(inbound("pix"))

        assert response.state == OrderState.DELIVERY_ADDRESS
        assert response.text == STAGING_NUMBER_REPLY

    @pytest.mark.asyncio
    async def test_confirmation_commits_once(self, make_orchestrator, store, bot_config):
        orchestrator = make_orchestrator(completion=FakeCompletion([CONFIRMATION_REPLY]))
        committed = await seed_conversation(store, 6, pending_order=make_order())

        response = await orchestrator.handle_message(inbound("sim"))
        assert response.state == OrderState.ORDER_COMMITTED
        assert "PEDIDO CONFIRMADO" in response.text
        assert response.image_asset_ref == bot_config.confirmation_image
        orders = await store.list_orders()
        assert len(orders) == 1
        assert orders[0].conversation_id == committed.id

        # the next message lands in a fresh conversation, not a second commit
        again = await orchestrator.handle_message(inbound("sim"))
        assert again.state == OrderState.FLAVOR_SELECTION
        assert len(await store.list_orders()) == 1

    @pytest.mark.asyncio
    async def test_confirmation_needs_affirmative(self, make_orchestrator, store):
        orchestrator = make_orchestrator(completion=FakeCompletion([CONFIRMATION_REPLY]))
        await seed_conversation(store, 6, pending_order=make_order())
        response = await orchestrator.handle_message(inbound("espera um pouco"))
        assert response.state == OrderState.ORDER_CONFIRMATION
        assert await store.list_orders() == []

    @pytest.mark.asyncio
    async def test_confirmation_without_house_number(self, make_orchestrator, store):
        orchestrator = make_orchestrator(
            completion=FakeCompletion(["[TEXT_FORMAT]Pedido confirmado![/END][CONFIRMATION_FORMAT][/END]"])
        )
        await seed_conversation(store, 6, pending_order=make_order(address="Rua Augusta"))
        response = await orchestrator.handle_message(inbound("sim"))

        assert response.state == OrderState.DELIVERY_ADDRESS
        assert response.text == COMMIT_NUMBER_REPLY
        assert await store.list_orders() == []

    @pytest.mark.asyncio
    async def test_voice_not_spoken_while_confirming(self, make_orchestrator, store, speech):
        orchestrator = make_orchestrator(
            completion=FakeCompletion(["[VOICE_FORMAT]Confere o pedido?[/END]"])
        )
        await seed_conversation(store, 6, pending_order=make_order())
        response = await orchestrator.handle_message(inbound("hmm"))
        assert response.voice_asset_ref is None
        assert response.text == "Confere o pedido?"
        assert speech.texts == []


class TestConfirmationAudio:
    @pytest.mark.asyncio
    async def test_audio_of_committed_order(self, make_orchestrator, store, speech):
        orchestrator = make_orchestrator(completion=FakeCompletion([CONFIRMATION_REPLY]))
        await seed_conversation(store, 6, pending_order=make_order())
        await orchestrator.handle_message(inbound("sim"))

        response = await orchestrator.handle_message(inbound("me manda o áudio do pedido"))
        assert response.voice_asset_ref == "/api/media/audio_1.mp3"
        assert "PEDIDO CONFIRMADO" in speech.texts[0]

    @pytest.mark.asyncio
    async def test_no_order_yet(self, orchestrator):
        response = await orchestrator.handle_message(inbound("quero ouvir o áudio do pedido"))
        assert response.text == NO_ORDER_FOR_AUDIO_REPLY

    @pytest.mark.asyncio
    async def test_speech_unavailable(self, make_orchestrator, store):
        orchestrator = make_orchestrator(speech=FakeSpeech(fail=True))
        await seed_conversation(store, 6, pending_order=make_order())
        response = await orchestrator.handle_message(inbound("manda o áudio do pedido"))
        assert response.text == AUDIO_UNAVAILABLE_REPLY.format(minutes=50)


class TestImageRequests:
    @pytest.mark.asyncio
    async def test_direct_image_request(self, orchestrator, store, completion):
        response = await orchestrator.handle_message(inbound("quero ver a foto da calabresa"))
        assert response.image_asset_ref == "https://img.test/calabresa.jpg"
        assert response.state == OrderState.FLAVOR_SELECTION
        assert completion.calls == []
        bot_message = (await stored(store)).messages[-1].content
        assert "[IMAGE_FORMAT]pizza-salgada_pizza-calabresa[/END]" in bot_message

    @pytest.mark.asyncio
    async def test_model_image_block(self, make_orchestrator):
        orchestrator = make_orchestrator(
            completion=FakeCompletion(["[TEXT_FORMAT]Olha só[/END][IMAGE_FORMAT]pizza-salgada_pizza-amazonas[/END]"])
        )
        response = await orchestrator.handle_message(inbound("boa noite"))
        assert response.image_asset_ref == "https://img.test/amazonas.jpg"
        assert response.text == "Olha só\n\nGostaria de pedir agora?"


class TestFailures:
    @pytest.mark.asyncio
    async def test_model_error_apologizes(self, make_orchestrator, store):
        orchestrator = make_orchestrator(
            completion=FakeCompletion([ExternalServiceError("llm", "down")])
        )
        await seed_conversation(store, 2)
        response = await orchestrator.handle_message(inbound("finalizar"))

        assert response.success is False
        assert response.text == TECHNICAL_PROBLEM_REPLY
        conversation = await stored(store)
        assert conversation.state == OrderState.ADD_MORE_OR_FINALIZE
        assert conversation.messages[-1].content == "finalizar"

    @pytest.mark.asyncio
    async def test_model_timeout(self, make_orchestrator):
        orchestrator = make_orchestrator(completion=SlowCompletion(), external_timeout=0.05)
        response = await orchestrator.handle_message(inbound("oi"))
        assert response.success is False
        assert response.text == TECHNICAL_PROBLEM_REPLY

    @pytest.mark.asyncio
    async def test_unexpected_error_never_propagates(self, make_orchestrator):
        orchestrator = make_orchestrator(completion=FakeCompletion([RuntimeError("boom")]))
        response = await orchestrator.handle_message(inbound("oi"))
        assert response.success is False
        assert response.text == TECHNICAL_PROBLEM_REPLY


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_requested_info_is_added(self, make_orchestrator):
        completion = FakeCompletion([
            "[TEXT_FORMAT]Um momento[/END][REQUEST_HISTORY]",
            "[TEXT_FORMAT]Fomos fundados em 1987![/END]",
        ])
        orchestrator = make_orchestrator(completion=completion)
        response = await orchestrator.handle_message(inbound("qual a história de vocês?"))

        assert response.text == "Fomos fundados em 1987!"
        assert len(completion.calls) == 2
        assert "Fundada em 1987 no Bixiga." in completion.calls[1][0]["content"]
        assert completion.calls[1][1] == {"role": "user", "content": "qual a história de vocês?"}

    @pytest.mark.asyncio
    async def test_enrichment_failure_keeps_first_reply(self, make_orchestrator):
        completion = FakeCompletion([
            "[TEXT_FORMAT]Um momento[/END][REQUEST_HISTORY]",
            ExternalServiceError("llm", "down"),
        ])
        orchestrator = make_orchestrator(completion=completion)
        response = await orchestrator.handle_message(inbound("qual a história?"))
        assert response.success
        assert response.text == "Um momento"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_identity_turns_are_serialized(self, make_orchestrator):
        probe = ConcurrencyProbe()
        orchestrator = make_orchestrator(completion=probe)
        await asyncio.gather(
            orchestrator.handle_message(inbound("oi")),
            orchestrator.handle_message(inbound("tudo bem?")),
        )
        assert probe.max_active == 1

    @pytest.mark.asyncio
    async def test_different_identities_run_concurrently(self, make_orchestrator, store):
        probe = ConcurrencyProbe()
        orchestrator = make_orchestrator(completion=probe)
        await asyncio.gather(
            orchestrator.handle_message(InboundMessage(identity="5511911110000", text="oi")),
            orchestrator.handle_message(InboundMessage(identity="5511922220000", text="oi")),
        )
        assert probe.max_active == 2

    @pytest.mark.asyncio
    async def test_serialized_turns_keep_both_messages(self, make_orchestrator, store):
        orchestrator = make_orchestrator(completion=ConcurrencyProbe())
        await asyncio.gather(
            orchestrator.handle_message(inbound("oi")),
            orchestrator.handle_message(inbound("tudo bem?")),
        )
        conversation = await stored(store)
        assert conversation.user_texts() == ["oi", "tudo bem?"]

    @pytest.mark.asyncio
    async def test_locks_released_after_turns(self, make_orchestrator):
        orchestrator = make_orchestrator(completion=ConcurrencyProbe())
        await asyncio.gather(
            orchestrator.handle_message(inbound("oi")),
            orchestrator.handle_message(inbound("tudo bem?")),
            orchestrator.handle_message(InboundMessage(identity="5511911110000", text="oi")),
        )
        assert orchestrator._locks == {}
        assert orchestrator._lock_users == {}


class TestVoiceTranscripts:
    @pytest.mark.asyncio
    async def test_transcript_is_marked_for_the_model(self, orchestrator, store, completion):
        await orchestrator.handle_message(
            inbound("quero uma pizza", is_voice_transcript=True, media_kind="audio")
        )
        conversation = await stored(store)
        assert conversation.messages[0].content == "[Áudio]: quero uma pizza"
        assert conversation.user_texts() == ["quero uma pizza"]
        assert completion.calls[0][-1]["content"].startswith("[Áudio]: quero uma pizza")

    @pytest.mark.asyncio
    async def test_typed_text_is_not_marked(self, orchestrator, store):
        await orchestrator.handle_message(inbound("quero uma pizza"))
        assert (await stored(store)).messages[0].content == "quero uma pizza"

    @pytest.mark.asyncio
    async def test_spoken_house_number_completes_address(self, orchestrator, store, completion):
        await seed_conversation(store, 4, address_data=make_address())
        response = await orchestrator.handle_message(
            inbound("1234", is_voice_transcript=True, media_kind="audio")
        )
        assert response.state == OrderState.PAYMENT_METHOD
        assert "Rua Augusta, 1234" in response.text
        assert completion.calls == []
