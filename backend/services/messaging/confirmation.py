"""
Ride confirmation phrase.

Asks Groq for a short, friendly confirmation once payment is verified. The
phrase is cosmetic: without an API key, or on any failure, the fixed
per-language message is returned instead.
"""

import logging
from decimal import Decimal
from typing import Optional

from django.conf import settings
from groq import Groq

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = 'es'

DEFAULT_MESSAGES = {
    'es': "¡Tu viaje por Bs. {fare} está confirmado! Tu conductor ya está en camino.",
    'pt': "Sua viagem de Bs. {fare} está confirmada! Seu motorista está a caminho.",
    'en': "Your ride for Bs. {fare} is confirmed! Your driver is on the way.",
}

LANGUAGE_NAMES = {
    'es': "Spanish",
    'pt': "Portuguese",
    'en': "English",
}

REQUEST_TIMEOUT_SECONDS = 5.0


def _format_fare(fare) -> str:
    return f"{Decimal(str(fare)):.2f}"


def default_confirmation_message(fare, lang: str = DEFAULT_LANGUAGE) -> str:
    template = DEFAULT_MESSAGES.get(lang, DEFAULT_MESSAGES[DEFAULT_LANGUAGE])
    return template.format(fare=_format_fare(fare))


def generate_confirmation_message(fare, charity_name: str = "", lang: str = DEFAULT_LANGUAGE,
                                  client: Optional[Groq] = None) -> str:
    """
    Confirmation phrase for a paid ride.

    Args:
        fare: Final fare paid by the rider
        charity_name: Charity the rider chose, if any
        lang: es, pt or en
        client: Groq client (built from GROQ_API_KEY when omitted)
    """
    fallback = default_confirmation_message(fare, lang)
    if client is None:
        if not settings.GROQ_API_KEY:
            return fallback
        client = Groq(api_key=settings.GROQ_API_KEY, timeout=REQUEST_TIMEOUT_SECONDS, max_retries=0)

    language = LANGUAGE_NAMES.get(lang, LANGUAGE_NAMES[DEFAULT_LANGUAGE])
    prompt = (
        f"Write one short, warm sentence in {language} confirming a taxi ride paid "
        f"for Bs. {_format_fare(fare)} and saying the driver is on the way."
    )
    if charity_name:
        prompt += f" Thank the rider for supporting {charity_name}."

    try:
        completion = client.chat.completions.create(
            model=settings.CONFIRMATION_MODEL,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=80,
            temperature=0.7,
        )
        text = (completion.choices[0].message.content or "").strip()
    except Exception as e:
        logger.warning("Confirmation message generation failed, using default: %s", e)
        return fallback

    return text or fallback
