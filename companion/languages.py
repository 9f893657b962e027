"""
Language helpers: name/code mapping and the per-language response directive
appended to every system prompt.
"""

from types import MappingProxyType
from typing import Optional

LANGUAGE_MAP = MappingProxyType({
    'english': 'en',
    'japanese': 'ja',
    'french': 'fr',
    'portuguese': 'pt',
    'spanish': 'es',
    'chinese': 'zh',
    'korean': 'ko',
    'thai': 'th',
    'german': 'de',
    'italian': 'it',
    'russian': 'ru',
    'hindi': 'hi',
})

LANGUAGE_NAMES = MappingProxyType({code: name.capitalize() for name, code in LANGUAGE_MAP.items()})

_DIRECTIVES = MappingProxyType({
    'japanese': '日本語で答えてください。ただし、ユーザーが別の言語で話しかけてきた場合は、その言語に切り替えて応答してください。',
    'english': 'Start responding in English. However, if the user writes in another language, naturally switch to their language and continue the conversation in that language.',
    'french': "Commencez à répondre en français. Cependant, si l'utilisateur écrit dans une autre langue, passez naturellement à sa langue et continuez la conversation dans cette langue.",
    'portuguese': 'Comece respondendo em português. No entanto, se o usuário escrever em outro idioma, mude naturalmente para o idioma dele e continue a conversa nesse idioma.',
    'spanish': 'Comienza respondiendo en español. Sin embargo, si el usuario escribe en otro idioma, cambia naturalmente a su idioma y continúa la conversación en ese idioma.',
    'chinese': '用中文回复。但是，如果用户用其他语言写信，请自然地切换到他们的语言并继续用该语言进行对话。',
    'thai': 'เริ่มตอบเป็นภาษาไทย อย่างไรก็ตาม หากผู้ใช้เขียนเป็นภาษาอื่น ให้เปลี่ยนไปใช้ภาษาของพวกเขาอย่างเป็นธรรมชาติและสนทนาต่อในภาษานั้น',
    'korean': '한국어로 응답을 시작하세요. 하지만 사용자가 다른 언어로 작성하면 자연스럽게 해당 언어로 전환하여 대화를 계속하세요.',
    'german': 'Beginne auf Deutsch zu antworten. Wenn der Benutzer jedoch in einer anderen Sprache schreibt, wechsle natürlich zu seiner Sprache und führe das Gespräch in dieser Sprache fort.',
    'italian': "Inizia a rispondere in italiano. Tuttavia, se l'utente scrive in un'altra lingua, passa naturalmente alla sua lingua e continua la conversazione in quella lingua.",
    'russian': 'Начните отвечать на русском языке. Однако, если пользователь пишет на другом языке, естественно переключитесь на его язык и продолжайте разговор на этом языке.',
    'hindi': 'हिंदी में जवाब देना शुरू करें। हालांकि, यदि उपयोगकर्ता किसी अन्य भाषा में लिखता है, तो स्वाभाविक रूप से उनकी भाषा में स्विच करें और उस भाषा में बातचीत जारी रखें।',
})

FALLBACK_DIRECTIVE = (
    "Start responding in {language}. However, if the user writes in another language, "
    "naturally switch to their language and continue the conversation in that language."
)


def get_language_code(language: Optional[str], fallback: str = 'en') -> str:
    """Accepts a code ('ja') or a name ('Japanese') and returns the code."""
    if not language:
        return fallback
    if language in LANGUAGE_NAMES:
        return language
    return LANGUAGE_MAP.get(language.lower(), fallback)


def get_language_name(code: Optional[str]) -> str:
    """Lowercase English language name for a user's `lang` code."""
    if not code:
        return 'english'
    name = LANGUAGE_NAMES.get(code)
    return name.lower() if name else code


def get_language_directive_message(language: str) -> str:
    # Lookup is case-insensitive; unknown languages keep their literal name
    return _DIRECTIVES.get((language or '').lower(), FALLBACK_DIRECTIVE.format(language=language))


def is_japanese(language: Optional[str]) -> bool:
    return get_language_code(language, fallback='') == 'ja'
