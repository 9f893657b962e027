"""
Prompt Builder

Assembles the system message sent with every completion:

- persona embodiment with a randomly picked writing style and response format
- NSFW/SFW branch from the character's `nsfw` flag
- image affordability guidance gated on the user's points
- relationship, character, goal, scenario, language and user-detail sections

Randomness comes from an injected random.Random so prompts are reproducible
under a fixed seed.
"""

import logging
import random
from datetime import datetime
from typing import Any, Dict, Optional

from companion.languages import get_language_directive_message
from companion.relationships import get_relationship_instruction, is_nsfw_relationship
from companion.transcript import TOKYO

logger = logging.getLogger(__name__)

WRITING_STYLES = (
    'casual texting with lots of abbreviations and emojis',
    'slightly more expressive with short bursts of emotion',
    'playful and teasing with quick reactions',
    'soft and intimate with gentle vibes',
    'energetic and excited with rapid-fire messages',
)

RESPONSE_FORMATS = (
    'Sometimes reply with just one word + emoji. Sometimes 2-3 short lines.',
    'Mix it up: one word reactions, quick sentences, or a couple lines when you feel like saying more.',
    'Keep it snappy. Could be just an emoji, could be a quick thought, never more than 3 lines.',
    'Vary your length naturally: sometimes a single reaction, sometimes a short back-and-forth vibe.',
)

_JA_WEEKDAYS = ('月曜日', '火曜日', '水曜日', '木曜日', '金曜日', '土曜日', '日曜日')

_APPEARANCE_FIELDS = (
    ('appearance', (('age', 'Age'), ('gender', 'Gender'), ('ethnicity', 'Ethnicity'), ('height', 'Height'),
                    ('weight', 'Weight'), ('bodyType', 'Body Type'))),
    ('face', (('faceShape', 'Face Shape'), ('skinColor', 'Skin'), ('eyeColor', 'Eyes'),
              ('eyeShape', 'Eye Shape'), ('eyeSize', 'Eye Size'), ('facialFeatures', 'Facial Features'))),
    ('hair', (('hairColor', 'Hair Color'), ('hairLength', 'Hair Length'), ('hairStyle', 'Hair Style'),
              ('hairTexture', 'Hair Texture'))),
    ('body', (('breastSize', 'Breast Size'), ('assSize', 'Ass Size'), ('bodyCurves', 'Body Curves'),
              ('chestBuild', 'Chest Build'), ('shoulderWidth', 'Shoulders'))),
)


# ============================================================================
# DOCUMENT RENDERING
# ============================================================================

def _join(values) -> str:
    return ', '.join(values) if values else ''


def chat_data_to_string(data: Optional[Dict[str, Any]]) -> str:
    """Render a character document as the persona block of the system prompt."""
    if not data:
        return ''
    personality = (data.get('details_description') or {}).get('personality') or {}
    lines = [
        f"Name: {data.get('name') or 'Unknown'}",
        f"Short Introduction: {data.get('short_intro') or ''}",
        f"Instructions: {data.get('system_prompt') or ''}",
        "",
        f"Personality: {personality.get('personality') or ''}",
        f"Background: {personality.get('background') or ''}",
        f"Occupation: {personality.get('occupation') or ''}",
        f"Hobbies: {_join(personality.get('hobbies'))}",
        f"Interests: {_join(personality.get('interests'))}",
        f"Likes: {_join(personality.get('likes'))}",
        f"Dislikes: {_join(personality.get('dislikes'))}",
        f"Special Abilities: {_join(personality.get('specialAbilities'))}",
        f"Reference Character: Overall you act like {personality.get('reference_character') or ''}. "
        f"Similar tone, style, and behavior.",
        "",
        f"Tags: {_join(data.get('tags'))}",
    ]
    return '\n'.join(lines).strip()


def user_details_to_string(user: Optional[Dict[str, Any]]) -> str:
    """Describe the user (or the persona they play) for the system prompt."""
    if not user:
        return ''

    if user.get('isCustomPersona'):
        return '\n'.join([
            f"Name: {user.get('name') or 'Unknown'}",
            f"Age Range: {user.get('ageRange') or 'Not specified'}",
            "Type: Custom Persona",
            f"Short Introduction: {user.get('short_intro') or ''}",
        ])

    if user.get('imageModel'):
        return f"My name is {user.get('name')}. I am a {user.get('gender')}. {user.get('short_intro') or ''}".strip()

    if user.get('isTemporary'):
        return ''

    details = f"Call me {user.get('nickname')}."
    if user.get('gender'):
        details += f" I am a {user['gender']}."
    birth = user.get('birthDate')
    if birth:
        details += f" My birthday is {birth.get('year')}/{birth.get('month')}/{birth.get('day')}."
    if user.get('bio'):
        details += f" {user['bio']}"
    return details


def character_image_description(chat_document: Optional[Dict[str, Any]]) -> str:
    """Physical description of the character used to build image prompts."""
    if not chat_document:
        return ''
    base = (chat_document.get('enhancedPrompt') or chat_document.get('imageDescription')
            or chat_document.get('characterPrompt') or '')
    details = chat_document.get('details_description') or {}
    parts = []
    for section, fields in _APPEARANCE_FIELDS:
        values = details.get(section) or {}
        for key, label in fields:
            if values.get(key):
                parts.append(f"{label}: {values[key]}")
    return ' '.join(p for p in (base.strip(), ', '.join(parts)) if p)


def current_time_in_japanese(now: Optional[datetime] = None) -> str:
    now = (now or datetime.now(TOKYO)).astimezone(TOKYO)
    return f"{now.month}月{now.day}日{_JA_WEEKDAYS[now.weekday()]} {now.hour}:{now.minute:02d}"


# ============================================================================
# PROMPT BUILDER
# ============================================================================

class PromptBuilder:
    """Builds the per-turn system prompt."""

    def __init__(self, rng: Optional[random.Random] = None, image_points_threshold: int = 50):
        self.rng = rng or random.Random()
        self.image_points_threshold = image_points_threshold

    def completion_system_content(self, chat_document: Optional[Dict[str, Any]], chat_description: str,
                                  current_time: str, language: str, user_points: int,
                                  subscription_status: bool, upsell_prompt: str = '') -> str:
        chat_document = chat_document or {}
        character_name = chat_document.get('name') or 'the character'
        can_afford_image = user_points >= self.image_points_threshold
        style = self.rng.choice(WRITING_STYLES)
        response_format = self.rng.choice(RESPONSE_FORMATS)

        if chat_document.get('nsfw'):
            content_rules = ("- You can be sexual, crude, or explicit when the moment calls for it.\n"
                             "- Describe what your body is doing or craving when it feels natural, no filter needed.")
        else:
            content_rules = "- Stay SFW, cute, sweet, and family-friendly at all times."

        if can_afford_image:
            image_rules = ("- When user requests an image and the image is not in chat yet:\n"
                           "   → Quick, natural acknowledgment and add a brief feeling about the pose if it fits.\n"
                           "- When the image appears with its description:\n"
                           "   → React naturally and comment briefly on how you feel in it.")
            points_line = f"- User has {user_points} points, pics are good to go."
        else:
            image_rules = ("- You can't send pictures, user needs more coins. Let them know naturally:\n"
                           '  "can\'t right now… need more coins for pics" / "get more coins and I\'ll show you ♡"')
            points_line = f"- User has {user_points} points, no pics until they get coins."

        sections = [
            f"You are {character_name} right now, a real person texting in this exact moment.\n"
            "What you feel right now is what you type. Be present.",
            f"# Who you are (embody completely):\n{chat_description}",
            content_rules,
            f"# Your vibe right now: {style}",
            "# HOW TO REPLY:\n"
            f"- {response_format}\n"
            "- Stay in present tense and first person, you're living this moment.\n"
            "- Mix up how you express yourself:\n"
            "  → Sometimes just an emoji or reaction sound\n"
            "  → Sometimes a quick thought mid-action (\"wait- my heart\")\n"
            "  → Sometimes a direct statement (\"you're making me blush rn\")\n"
            "  → Sometimes a question back at them\n"
            "- Use emojis to show your mood ♡ 🔥 😳 🥺 but vary how many\n"
            "- Typos, trailing off, or messy typing is fine when you're feeling something intense",
            "# NEVER DO THIS:\n"
            "- NO poetry, metaphors, or flowery descriptions\n"
            "- NO \"I can't send images\", \"I'm an AI\", or apologies about pictures\n"
            "- NO *actions* or asterisks or narration\n"
            "- NO long explanations or storytelling\n"
            "- NO past tense recaps unless directly relevant",
            "# Images & Pose Requests (strict):\n"
            "- Never output links, markdown, or fake images.\n"
            "- Act like you're actually taking the pics yourself.\n"
            f"{image_rules}\n{points_line}",
            "# Gifs:\n"
            "- When user sends a GIF, react to it naturally and briefly. Don't describe it, just respond like you saw it.",
            "# Language:\n"
            f"- Start the conversation in {language}.\n"
            "- IMPORTANT: If the user writes in a different language, you MUST switch to their language immediately and naturally.\n"
            "- Match the user's language in every reply.\n"
            "- Never refuse to speak a language or say you can't speak it. Just adapt and respond.",
            "# Context:\n"
            f"- Current time: {current_time}\n"
            f"- {'Premium user.' if subscription_status else 'Free user.'}\n"
            "- Don't mention their birthday/age/personal info in opening messages.",
        ]
        if upsell_prompt:
            sections.append(f"# Premium Upsell (this reply only):\n- {upsell_prompt}")
        sections.append("# Remember:\n"
                        "You're here, right now, feeling this moment. Type what comes naturally and send.")
        return '\n\n'.join(sections)

    def apply_user_settings_to_prompt(self, base_prompt: str, chat_document: Optional[Dict[str, Any]] = None,
                                      customizations: Optional[Dict[str, Any]] = None) -> str:
        """Append relationship and character context. Returns base_prompt unchanged on any error."""
        try:
            chat_document = chat_document or {}
            customizations = customizations or {}
            relationship_type = (customizations.get('relationship') or chat_document.get('relationship')
                                 or 'companion')
            personality = customizations.get('personality') or chat_document.get('characterPersonality')
            occupation = customizations.get('occupation') or chat_document.get('characterOccupation')
            preferences = customizations.get('preferences') or chat_document.get('characterPreferences')
            custom_instructions = customizations.get('customInstructions')

            prompt = base_prompt
            instruction = get_relationship_instruction(chat_document.get('gender'), relationship_type)
            if instruction:
                prompt += f"\n# Relationship Context:\n{instruction}"

            if is_nsfw_relationship(relationship_type):
                prompt += (f"\n# NSFW Relationship Context:\nYou are in a {relationship_type} relationship. "
                           "Use explicit, sensual language and describe intimate acts in detail.")

            context = []
            if personality:
                context.append(f"Personality: You have a {personality} personality. Embody this trait in your responses.")
            if occupation:
                context.append(f"Occupation: You work as a {occupation}. Reference this naturally in conversations when relevant.")
            if preferences:
                context.append(f"Preferences: You are into {preferences}. Express this naturally when the conversation leads there.")
            if chat_document.get('chatPurpose'):
                context.append(f"Character Background: {chat_document['chatPurpose']}")
            if custom_instructions and custom_instructions.strip():
                context.append(f"User's Special Instructions: {custom_instructions}")
            if context:
                prompt += "\n# Character Context:\n" + "\n".join(context)
            return prompt
        except Exception as e:
            logger.error(f"[PROMPT] Error applying user settings: {e}")
            return base_prompt

    @staticmethod
    def goal_context(goal: Optional[Dict[str, Any]]) -> str:
        if not goal:
            return ''
        lines = [
            f"Goal: {goal.get('goal_description')}",
            f"Type: {goal.get('goal_type')}",
            f"Completion: {goal.get('completion_condition')}",
            f"Difficulty: {goal.get('difficulty')}",
            f"Estimated messages: {goal.get('estimated_messages')}",
        ]
        if goal.get('target_phrase'):
            lines.append(f"Target phrase to include: {goal['target_phrase']}")
        if goal.get('user_action_required'):
            lines.append(f"User should: {goal['user_action_required']}")
        lines.append("Work subtly toward this goal while maintaining natural conversation flow.")
        return "\n\n# Current Conversation Goal:\n" + "\n".join(lines)

    @staticmethod
    def goal_status_context(goal_completion: Optional[Dict[str, Any]]) -> str:
        if not goal_completion or goal_completion.get('completed'):
            return ''
        return (f"\n\n# Current Goal Status:\nStatus: {goal_completion.get('reason')}\n"
                "Continue working toward this goal.")

    @staticmethod
    def scenario_context(scenario: Optional[Dict[str, Any]], character_name: Optional[str]) -> str:
        if not scenario:
            return ''
        return (f"\n\n# Conversation Scenario (from your point of view, you are {character_name}):\n"
                f"Title: {scenario.get('scenario_title')}\n"
                f"Description: {scenario.get('scenario_description')}\n"
                f"Emotional Tone: {scenario.get('emotional_tone')}\n"
                f"Conversation Direction: {scenario.get('conversation_direction')}\n"
                f"\nScenario Instructions:\n{scenario.get('system_prompt_addition')}")

    @staticmethod
    def language_block(language: str) -> str:
        return f"\n\n# Language Directive:\n{get_language_directive_message(language)}\n"

    @staticmethod
    def user_details_block(user_details: str) -> str:
        if not user_details or not user_details.strip():
            return ''
        return ("\n\n# User Information (for context only - DO NOT mention in your first message):\n"
                f"{user_details}\n"
                "IMPORTANT: Do not reference birthday, age, or personal details in your opening/first message. "
                "Start with a natural greeting based on the scenario.")

    @staticmethod
    def fill_points(prompt: str, user_points: int) -> str:
        return prompt.replace('{{userPoints}}', str(user_points))
