"""
Fixed prompt text and canned replies for the ordering bot.

The configurable persona prompt lives in the store (BotConfiguration); the
text here is what the engine always adds around it: the fallback prompt,
the state addenda that bias phrasing in the address and payment states,
the tag protocol reminder sent with the latest customer turn, and the
replies the engine sends without consulting the model.
"""

from typing import Optional

FALLBACK_SYSTEM_PROMPT = (
    "Você é um atendente de pizzaria. Ajude o cliente a fazer seu pedido. "
    "NUNCA INVENTE informações sobre a pizzaria."
)

ADDRESS_STATE_ADDENDUM = """

VOCÊ ESTÁ NO ESTADO DE COLETA DE ENDEREÇO.
- Se o cliente já informou o nome da rua sem o número, pergunte SOMENTE o número.
- Use exatamente este formato: "Qual é o NÚMERO do seu endereço na [rua mencionada]?"
- NÃO prossiga para o próximo estado até ter um número de endereço."""

PAYMENT_STATE_ADDENDUM = """

VOCÊ ESTÁ NO ESTADO DE COLETA DE FORMA DE PAGAMENTO.
- Pergunte APENAS qual a forma de pagamento desejada.
- Mencione troco SOMENTE se o cliente escolher pagar em dinheiro.
- Se o pagamento for VR, PIX ou cartão, NÃO mencione troco."""

_STATE_ADDENDA = {
    4: ADDRESS_STATE_ADDENDUM,
    5: PAYMENT_STATE_ADDENDUM,
}

FORMAT_REMINDER = """

LEMBRETE:
1. Você DEVE formatar sua resposta usando uma das seguintes tags: [TEXT_FORMAT], [VOICE_FORMAT], [IMAGE_FORMAT] ou [JSON_FORMAT], e terminar com [/END].
2. Se o usuário perguntar sobre uma pizza específica ou pedir para ver uma imagem, SEMPRE use [IMAGE_FORMAT]pizza-salgada_pizza-NOME_DA_PIZZA[/END] para mostrar a imagem.
3. Para o cardápio completo use [IMAGE_FORMAT]cardapio[/END].
4. Para pizza meio a meio use [IMAGE_FORMAT]pizza-salgada_pizza-SABOR1+pizza-salgada_pizza-SABOR2[/END].
5. Use [VOICE_FORMAT] APENAS quando o cliente solicitar informação por áudio. Seja conciso, com frases curtas.
6. Nunca diga que não pode mostrar imagens - o sistema já tem todas as imagens armazenadas.
7. Quando o usuário fornecer dados completos do pedido (pizza, endereço, pagamento), envie um [JSON_FORMAT] com esses dados.
8. Quando usar [CONFIRMATION_FORMAT], DEVE também incluir [JSON_FORMAT] com os dados do pedido.
9. Use este formato para o JSON:
[JSON_FORMAT]
{
  "pedido": {
    "items": [{"nome": "Nome da Pizza", "quantidade": 1, "preco": 00.00}],
    "endereco": "Endereço completo com número",
    "pagamento": "Forma de pagamento"
  }
}
[/END]"""

ENRICHMENT_PROMPT = """Você precisa responder a uma pergunta do cliente com mais detalhes.
Você já deu esta resposta parcial: "{initial_response}"

Agora possui as seguintes informações adicionais para enriquecer sua resposta:
{additional_info}

Reescreva sua resposta incorporando estas informações de forma natural.
Use o mesmo estilo e tom da resposta anterior, mas inclua os detalhes relevantes.
Formate sua resposta com [TEXT_FORMAT], [VOICE_FORMAT], [IMAGE_FORMAT] ou [JSON_FORMAT] e termine com [/END]."""

# ------------------------------------------------------------------ #
# Canned replies
# ------------------------------------------------------------------ #

PAYMENT_OPTIONS_REPLY = (
    "Qual será a forma de pagamento? Temos as opções: Dinheiro, Cartão de crédito, "
    "Cartão de débito, PIX ou VR."
)
CARD_TYPE_REPLY = "Por favor, especifique se deseja pagar com cartão de crédito ou débito."
TECHNICAL_PROBLEM_REPLY = (
    "Desculpe, estou enfrentando alguns problemas técnicos no momento. "
    "Poderia tentar novamente em instantes?"
)
STAGING_NUMBER_REPLY = (
    "Preciso do número do endereço antes de confirmar. Por favor, informe o número completo."
)
COMMIT_NUMBER_REPLY = (
    "Desculpe, precisamos de um endereço completo com número para confirmar seu pedido. "
    "Por favor, informe o número do seu endereço."
)
ORDER_NOT_FOUND_REPLY = (
    "Não consegui encontrar os detalhes do seu pedido para confirmar. "
    "Por favor, tente fazer o pedido novamente."
)
IMAGE_NOT_FOUND_REPLY = "Desculpe, não encontrei imagem para este item no nosso cardápio."
IMAGE_ERROR_REPLY = "Desculpe, não consegui processar a imagem solicitada."
AUDIO_UNAVAILABLE_REPLY = (
    "Desculpe, não consegui gerar o áudio da confirmação neste momento. "
    "Posso confirmar que seu pedido foi registrado e será entregue em aproximadamente "
    "{minutes} minutos."
)
NO_ORDER_FOR_AUDIO_REPLY = (
    "Ainda não encontrei um pedido seu para gerar o áudio. Quer fazer um pedido agora?"
)
MENU_IMAGE_FOLLOW_UP = "Aqui está nosso cardápio. Qual sabor de pizza você gostaria de pedir?"
CONFIRMATION_IMAGE_CAPTION = "Pedido Confirmado"
MENU_IMAGE_CAPTION = "Cardápio"
DEFAULT_BOT_NAME = "Assistente"
DEFAULT_BOT_DESCRIPTION = "Atendente da pizzaria"
MISSING_STORY = "Informação não disponível"
MISSING_ADDRESS = "Endereço não informado"


def state_addendum(state: int) -> Optional[str]:
    """Extra instructions appended to the system prompt in a given state."""
    return _STATE_ADDENDA.get(state)
