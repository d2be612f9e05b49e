"""Tests for keyword and pattern detectors."""

import pytest

from orderbot.conversation import detectors
from tests.conftest import make_menu_items


class TestWordMatching:
    def test_accent_insensitive(self):
        assert detectors.contains_any("Cartão de CRÉDITO", ("credito",))

    def test_whole_words_only(self):
        assert not detectors.contains_any("por favor", ("vr",))
        assert not detectors.is_affirmative("é simples")

    def test_phrase_with_flexible_spacing(self):
        assert detectors.contains_any("meio   a meio", ("meio a meio",))

    def test_empty_inputs(self):
        assert not detectors.contains_any("", ("pix",))
        assert not detectors.contains_any("pix", ())


class TestNumbers:
    @pytest.mark.parametrize("text, expected", [
        ("meu cep é 01305-000", "01305000"),
        ("01305000", "01305000"),
        ("sem cep", None),
        ("", None),
    ])
    def test_find_cep(self, text, expected):
        assert detectors.find_cep(text) == expected

    @pytest.mark.parametrize("text, expected", [
        ("1234", "1234"),
        (" 45. ", "45"),
        ("nº 12", "12"),
        ("número 12", None),
        ("1234 apto 5", None),
    ])
    def test_number_only(self, text, expected):
        assert detectors.number_only(text) == expected

    def test_number_token_ignores_cep_parts(self):
        assert not detectors.has_number_token("01305-000")
        assert detectors.has_number_token("casa 12")


class TestIntents:
    @pytest.mark.parametrize("text", ["reiniciar", "Começar de novo!", "novo pedido"])
    def test_reset_phrases(self, text):
        assert detectors.is_reset_request(text)

    def test_reset_requires_whole_message(self):
        assert not detectors.is_reset_request("quero fazer um novo pedido de pizza")

    @pytest.mark.parametrize("text, expected", [
        ("pix", "PIX"),
        ("cartão de crédito", "Cartão de crédito"),
        ("débito", "Cartão de débito"),
        ("em dinheiro", "Dinheiro"),
        ("vr", "VR"),
        ("cheque", None),
    ])
    def test_payment_from_text(self, text, expected):
        assert detectors.payment_from_text(text) == expected

    def test_card_without_type(self):
        assert detectors.mentions_card_without_type("no cartão")
        assert not detectors.mentions_card_without_type("cartão de débito")

    def test_audio_confirmation_request(self):
        assert detectors.is_audio_confirmation_request("manda o áudio do pedido")
        assert not detectors.is_audio_confirmation_request("manda um áudio")
        assert detectors.is_audio_request("manda um áudio")


class TestImageRequests:
    @pytest.fixture
    def items(self):
        return make_menu_items()

    def test_needs_view_keyword(self, items):
        assert detectors.detect_image_request("quero a amazonas", items) is None

    def test_menu_wins(self, items):
        assert detectors.detect_image_request("mostra o cardápio e a amazonas", items) == ["cardapio"]

    def test_single_item(self, items):
        assert detectors.detect_image_request("quero ver a calabresa", items) == [
            "pizza-salgada_pizza-calabresa"
        ]

    def test_split_request_builds_composite(self, items):
        assert detectors.detect_image_request(
            "mostra como fica meio amazonas meio dolce banana", items
        ) == ["pizza-salgada_pizza-amazonas+pizza-doce_pizza-dolce-banana"]

    def test_two_items_without_split_are_separate(self, items):
        assert detectors.detect_image_request("foto da calabresa e da amazonas", items) == [
            "pizza-salgada_pizza-calabresa",
            "pizza-salgada_pizza-amazonas",
        ]

    def test_unknown_item(self, items):
        assert detectors.detect_image_request("mostra a marguerita", items) is None

    def test_mentioned_items_in_order(self, items):
        names = [i.name for i in detectors.mentioned_items("calabresa ou amazonas", items)]
        assert names == ["Pizza Calabresa", "Pizza Amazonas"]
