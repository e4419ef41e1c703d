"""
Localized message catalog for proactive engagement messages.

Values are either plain strings or callables taking the queued row's
message_params. Only the keys the outbox and the response handlers use
live here; the rest of the product's copy is owned elsewhere.
"""
import logging
from typing import Any, Callable, Dict, Optional, Union

from core.config import settings

logger = logging.getLogger(__name__)

MessageValue = Union[str, Callable[[Dict[str, Any]], str]]


def _weekly_celebration_en(params: Dict[str, Any]) -> str:
    count = int(params.get("count", 0))
    noun = "transaction" if count == 1 else "transactions"
    return f"Congratulations! 🎉 You recorded {count} {noun} this week. Keep it up!"


def _weekly_celebration_pt(params: Dict[str, Any]) -> str:
    count = int(params.get("count", 0))
    noun = "transação" if count == 1 else "transações"
    return f"Parabéns! 🎉 Você registrou {count} {noun} esta semana. Continue assim!"


MESSAGES: Dict[str, Dict[str, MessageValue]] = {
    "en": {
        "engagement.goodbye_self_select": (
            "Hey! I noticed it's been a while since you dropped by 🤔\n\n"
            "Everything okay? Let me know:\n"
            "1️⃣ Confused about the app\n"
            "2️⃣ Just busy right now\n"
            "3️⃣ All good, just don't need it anymore\n\n"
            "Just reply with the number that fits!"
        ),
        "engagement.goodbye_response_1": (
            "No problem! Let me help you get started again. I'll send you some tips over the "
            "next few days. How about logging an expense? E.g., 'spent 50 on lunch'"
        ),
        "engagement.goodbye_response_2": (
            "Got it! See you in 2 weeks. I'll be here if you need anything in the meantime."
        ),
        "engagement.goodbye_response_3": (
            "All good! The door is always open. Just send a message whenever you want to come back."
        ),
        "engagement.help_restart": (
            "No problem! Let's start from the beginning.\n\n"
            "The basics are simple: tell me about your expenses like you would in a conversation.\n\n"
            "For example:\n"
            "• \"Spent 50 at the grocery store\"\n"
            "• \"Paid 30 for uber yesterday\"\n"
            "• \"Lunch 25 dollars\"\n\n"
            "Try sending an expense now."
        ),
        "engagement.tier_1_complete": (
            "You've got the basics down!\n"
            "Want to go further? Try setting a budget: \"set food budget to 500\""
        ),
        "engagement.tier_2_complete": (
            "You're not just tracking, you're planning!\n"
            "Want to see the results? Try \"report this month\" to see your progress."
        ),
        "engagement.tier_3_complete": (
            "You're a pro now! You have complete control over your finances.\n"
            "Any questions, just reach out."
        ),
        "engagement.weekly_review_celebration": _weekly_celebration_en,
        "engagement.tips_disabled": "✅ Tips disabled. Send 'enable tips' to re-enable.",
        "engagement.tips_enabled": "✅ Tips enabled! You will receive suggestions after actions.",
        "engagement.opt_out_confirmed": (
            "Reminders paused ✓\n\n"
            "You won't receive re-engagement messages anymore. You can still use the app normally.\n\n"
            "To reactivate, send: *start reminders*"
        ),
        "engagement.opt_in_confirmed": (
            "Reminders reactivated ✓\n\n"
            "You'll receive re-engagement messages when appropriate.\n\n"
            "To pause again, send: *stop reminders*"
        ),
        "engagement.preference_error": "Failed to update preferences. Please try again.",
    },
    "pt-BR": {
        "engagement.goodbye_self_select": (
            "Oi! Percebi que faz um tempinho que você não aparece por aqui 🤔\n\n"
            "Tudo bem por aí? Me conta:\n"
            "1️⃣ Confuso com o app\n"
            "2️⃣ Ocupado agora\n"
            "3️⃣ Tudo certo, só não preciso mais\n\n"
            "Responde com o número que combina mais com você!"
        ),
        "engagement.goodbye_response_1": (
            "Sem problemas! Vou te ajudar a começar de novo. Vou te mandar algumas dicas nos "
            "próximos dias. Que tal começar registrando uma despesa? Ex: 'gastei 50 no almoço'"
        ),
        "engagement.goodbye_response_2": (
            "Entendido! Te vejo daqui a 2 semanas. Enquanto isso, fico aqui se precisar de algo."
        ),
        "engagement.goodbye_response_3": (
            "Tudo certo! A porta está sempre aberta. Manda uma mensagem quando quiser voltar."
        ),
        "engagement.help_restart": (
            "Sem problemas! Vamos do começo.\n\n"
            "O básico é simples: me conta seus gastos como se fosse uma conversa.\n\n"
            "Por exemplo:\n"
            "• \"Gastei 50 no mercado\"\n"
            "• \"Paguei 30 de uber ontem\"\n"
            "• \"Almoço 25 reais\"\n\n"
            "Tenta mandar uma despesa agora."
        ),
        "engagement.tier_1_complete": (
            "Você já dominou o básico!\n"
            "Quer ir além? Tenta definir um orçamento: \"definir orçamento de 500 para alimentação\""
        ),
        "engagement.tier_2_complete": (
            "Você não está só rastreando, está planejando!\n"
            "Quer ver o resultado? Tenta \"relatório desse mês\" pra ver sua organização."
        ),
        "engagement.tier_3_complete": (
            "Você é fera! Tem controle total das suas finanças agora.\n"
            "Qualquer dúvida, é só chamar."
        ),
        "engagement.weekly_review_celebration": _weekly_celebration_pt,
        "engagement.tips_disabled": "✅ Dicas desativadas. Envie 'ativar dicas' para reativar.",
        "engagement.tips_enabled": "✅ Dicas ativadas! Você receberá sugestões após ações.",
        "engagement.opt_out_confirmed": (
            "Lembretes pausados ✓\n\n"
            "Você não receberá mais mensagens de reengajamento. Você ainda pode usar o app normalmente.\n\n"
            "Para reativar, envie: *ativar lembretes*"
        ),
        "engagement.opt_in_confirmed": (
            "Lembretes reativados ✓\n\n"
            "Você voltará a receber mensagens de reengajamento quando apropriado.\n\n"
            "Para pausar novamente, envie: *parar lembretes*"
        ),
        "engagement.preference_error": "Erro ao atualizar preferências. Por favor, tente novamente.",
    },
}


def normalize_locale(locale: Optional[str]) -> str:
    """Map 'pt-br', 'pt_BR', 'EN-us' etc. onto a catalog locale, else the default."""
    if locale:
        candidate = locale.replace("_", "-").lower()
        for known in MESSAGES:
            if known.lower() == candidate:
                return known
        language = candidate.split("-")[0]
        for known in MESSAGES:
            if known.lower().split("-")[0] == language:
                return known
    return settings.DEFAULT_LOCALE


class Localizer:
    """Pure lookup over the message catalog."""

    def __init__(self, messages: Optional[Dict[str, Dict[str, MessageValue]]] = None):
        self._messages = messages if messages is not None else MESSAGES

    def get_message(self, key: str, locale: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> str:
        table = self._messages.get(normalize_locale(locale), {})
        value = table.get(key)
        if value is None:
            logger.warning(f"Missing translation for key={key} locale={locale}")
            return f"[Missing translation: {key}]"
        if callable(value):
            return value(params or {})
        return value
