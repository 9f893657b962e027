"""
LLM-backed classifiers and generators used by the completion pipeline.

Every helper fails open: when the model call or schema validation fails the
documented default is returned and the pipeline continues without it.
"""

import logging
import random
import re
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, Field

from companion.completion import CompletionClient
from companion.config_loader import CONFIG
from companion.relationships import RELATIONSHIP_TIERS, get_relationship_instruction

logger = logging.getLogger(__name__)


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class ImageRequestCheck(BaseModel):
    image_request: bool
    nsfw: bool


class UpsellCheck(BaseModel):
    trigger: bool
    confidence: float = Field(ge=0, le=1)
    severity: str = "none"
    reason: Optional[str] = None
    user_intent: Optional[str] = None


class ChatGoal(BaseModel):
    goal_type: Literal["relationship", "activity", "image request"]
    goal_description: str
    completion_condition: str
    target_phrase: Optional[str] = None
    user_action_required: Optional[str] = None
    difficulty: Literal["easy", "medium", "hard"]
    estimated_messages: int = Field(ge=1, le=20)


class GoalCompletion(BaseModel):
    completed: bool
    confidence: float = Field(ge=0, le=100)
    reason: str


class Scenario(BaseModel):
    scenario_title: str
    scenario_description: str
    emotional_tone: str
    conversation_direction: str
    system_prompt_addition: str


class ScenarioList(BaseModel):
    scenarios: List[Scenario] = Field(min_length=3, max_length=3)


class ChatSuggestions(BaseModel):
    suggestions: List[str] = Field(min_length=3, max_length=3)


# ============================================================================
# PROMPT DATA
# ============================================================================

SUGGESTION_STYLE_DIRECTIVES = {
    'flirty': 'Keep the suggestions playful, flirty, and slightly teasing with light emoji accents.',
    'romantic': 'Make the suggestions soft, affectionate, and romantic with gentle warmth.',
    'dominant': 'Use a confident, teasing, and slightly dominant tone with bold phrasing.',
    'innocent': 'Keep the suggestions shy, sweet, and a little timid with bashful wording.',
    'humorous': 'Make the suggestions witty, lighthearted, and playful with fun energy.',
    'nsfw': 'Make the suggestions explicitly hot and direct, sexual, focusing on adult intimacy. Use bold and provocative language.',
    'neutral': 'Keep the suggestions conversational, balanced, and low-pressure.',
}

NATIVE_LANGUAGE_NAMES = {
    'french': 'français',
    'japanese': '日本語',
    'spanish': 'español',
    'portuguese': 'português',
    'german': 'Deutsch',
    'italian': 'italiano',
    'chinese': '中文',
    'korean': '한국어',
    'thai': 'ไทย',
    'russian': 'русский',
    'hindi': 'हिन्दी',
    'english': 'English',
}

SCENARIO_CATEGORIES = {
    'free': [
        'A ambiguous encounter : A chance meeting that leads to unexpected intimacy',
        'Emotional distress : Character seeks comfort from user during a tough time',
        'Flirty banter : Light-hearted teasing that escalates into something more',
        'Alone together in a confined space : Forced proximity leads to tension and attraction',
        'Private moment interrupted : User catches character in a vulnerable or intimate moment',
        'Sensual collaboration : User and character work together on something intimate or physical',
        'Jealousy and reconciliation : Tension builds and resolves through physical closeness',
        'Late night confession : Deep conversation escalates into intimate connection',
        'Forbidden attraction : User and character explore chemistry despite circumstances',
        'Spontaneous passion : Sudden moment where both give in to attraction',
        'Playful seduction : Character deliberately creates intimate moment with user',
        'Mutual vulnerability : Both share intimate thoughts leading to physical connection',
    ],
    'premium': [
        'Intimate massage : Character offers a sensual massage that leads to more',
        "Midnight visit : Character shows up at user's place seeking comfort and intimacy",
        'Role reversal : Character takes the lead in an intimate scenario',
        "Sensory exploration : User and character explore each other's senses in detail",
        'Tease and denial : Prolonged build-up of tension before release',
        'Shared fantasies : User and character discuss and act out fantasies together',
        'After-hours adventure : Secret rendezvous that turns intimate',
        'Emotional breakthrough : Character opens up emotionally, leading to physical closeness',
        'Seductive challenge : Character dares user to take things further',
        'Mutual indulgence : Both characters agree to explore desires together',
        'Intimate game : A playful activity that leads to unexpected intimacy',
        'Deep connection : A scenario focusing on emotional and physical bonding',
    ],
}

_CHARACTER_NAME_PLACEHOLDER = re.compile(r'\[Character name\]', re.IGNORECASE)


def _dedent(text: str) -> str:
    return re.sub(r'^\s+', '', text, flags=re.MULTILINE).strip()


class Classifiers:
    """
    Structured LLM helpers.

    Args:
        completion: CompletionClient used for every call
        config: configuration dict (classifier model keys, token limits)
        rng: random source for goal type and scenario category selection
    """

    def __init__(self, completion: CompletionClient, config: Optional[Dict[str, Any]] = None,
                 rng: Optional[random.Random] = None):
        cfg = (config or CONFIG).get("classifiers", {})
        self.completion = completion
        self.rng = rng or random.Random()
        self.model = cfg.get("model", "gpt-4o")
        self.generator_model = cfg.get("generator_model", "llama-3-70b")
        self.suggestions_model = cfg.get("suggestions_model", "deepseek-v3-turbo")
        self.max_tokens = int(cfg.get("max_tokens", 800))

    # ------------------------------------------------------------------
    # Image request detection
    # ------------------------------------------------------------------

    async def check_image_request(self, last_assistant_message: Optional[str],
                                  last_user_message: Optional[str]) -> Dict[str, Any]:
        """Does the assistant's reply try to send an image? Returns {} on failure."""
        if not last_assistant_message and not last_user_message:
            return {}

        system = _dedent("""
            You are a helpful assistant designed to evaluate whether the assistant's response is trying to generate an image.
            Make sure the assistant is explicitly trying to send an image following the user's message.
            1. **image_request**: true if the message is an explicit request for image generation, false otherwise.
            2. **nsfw**: Based on the request, what is the kind of image that should be generated ? true if the content is explicit or adult-oriented, false otherwise.
        """)
        analysis = _dedent(f"""
            Analyze the following request:
            "User: {last_user_message}"
            "Assistant: {last_assistant_message}"
            Is the assistant trying to send an image following the user message ?
            Can you tell exactly what image is being requested based on the conversation ? if not, respond with image_request as false.
            Format response using JSON object with the following keys: image_request, nsfw.
        """)
        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": analysis}],
            ImageRequestCheck, model=self.model, max_tokens=600, name="image_instructions",
        )
        return result.model_dump() if result else {}

    # ------------------------------------------------------------------
    # Upsell detection
    # ------------------------------------------------------------------

    async def check_early_nsfw_upsell(self, recent_messages: List[Dict[str, Any]],
                                      is_nsfw_character: bool = False,
                                      conversation_length: int = 0) -> Dict[str, Any]:
        """
        Detect a free user pushing early for explicit content.

        Returns:
            {trigger, confidence (0..1), severity, reason, user_intent}
        """
        default = {"trigger": False, "confidence": 0.0, "severity": "none", "reason": None, "user_intent": None}
        if not recent_messages:
            return default

        transcript = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in recent_messages)
        system = _dedent("""
            You are an expert content moderator for an AI companion app.
            Decide whether the user is pushing early for explicit sexual content that requires a premium subscription.
            Light flirting or roleplay setup is not a push. Explicit, insistent or escalating sexual requests are.
            Respond with a JSON object:
            - trigger: true if an upgrade prompt should be shown
            - confidence: 0 to 1
            - severity: one of 'none', 'low', 'medium', 'high'
            - reason: short explanation
            - user_intent: what the user is trying to get
        """)
        user = _dedent(f"""
            Character is NSFW: {'yes' if is_nsfw_character else 'no'}
            Conversation length: {conversation_length} messages

            Recent messages:
            {transcript}
        """)
        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            UpsellCheck, model=self.model, max_tokens=600, temperature=0.3, name="early_nsfw_upsell",
        )
        return result.model_dump() if result else default

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    async def generate_chat_goal(self, chat_description: str, persona: Optional[Dict[str, Any]] = None,
                                 settings: Optional[Dict[str, Any]] = None,
                                 subscription_status: bool = False,
                                 language: str = 'en', gender: Optional[str] = None) -> Optional[Dict[str, Any]]:
        settings = settings or {}
        relationship_type = settings.get('relationshipType') or 'companion'
        relationship = get_relationship_instruction(gender, relationship_type) or ''

        goal_types = ['activity', 'image request'] if subscription_status else ['image request']
        selected_goal_type = self.rng.choice(goal_types)

        persona_context = ''
        if persona:
            persona_context = f"\nUser Persona: {persona.get('name')} - {persona.get('short_intro') or 'No description available'}"

        activity_line = '- activity: Doing something together (games, roleplay, etc.)' if subscription_status else ''
        system = _dedent(f"""
            You are a chat goal generator that creates engaging conversation objectives for AI character interactions.
            Generate a specific, achievable goal for the conversation based on the character description and user context.
            Goals should be:
            - Engaging and fun
            - Appropriate for the character's personality
            - Achievable within a reasonable number of messages
            - Clear in their completion criteria
            Goal type for this request: {selected_goal_type}
            Other possible goal types:
            {activity_line}
            - image request: User needs to ask for a specific image
            Use the character description and persona context to tailor the goal.
            # User Relationship Context :
            - The user has a relationship with the character, the goal must be in accordance with the relationship.
            - The relationship type is {relationship_type}.
            - Relationship Context: {relationship}
            Respond in {language}.
        """)
        user = (f"Character Description:\n{chat_description}{persona_context}\n\n"
                "Generate a chat goal that would be interesting and engaging for this character interaction.\n"
                "Consider the character's personality, background, relationship with the user and interests when creating the goal.")

        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            ChatGoal, model=self.generator_model, max_tokens=self.max_tokens, name="chat_goal",
        )
        if not result:
            logger.warning("[GOALS] Goal generation failed")
            return None
        return result.model_dump()

    async def check_goal_completion(self, goal: Optional[Dict[str, Any]], messages: List[Dict[str, Any]],
                                    language: str = 'en') -> Dict[str, Any]:
        if not goal or not messages:
            return {"completed": False, "confidence": 0}

        recent = [m for m in messages
                  if m.get('content') and not str(m['content']).startswith('[Image]') and m.get('role') != 'system'][-10:]
        conversation = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in recent)

        system = _dedent("""
            You are a goal completion analyzer. Determine if the conversation goal has been achieved based on the messages.
            Return a JSON object with:
            - completed: boolean (true if goal is achieved)
            - confidence: number (0-100, how confident you are)
            - reason: string (brief explanation)
        """)
        lines = [f"Goal: {goal.get('goal_description')}",
                 f"Completion Condition: {goal.get('completion_condition')}"]
        if goal.get('target_phrase'):
            lines.append(f"Target Phrase: {goal['target_phrase']}")
        if goal.get('user_action_required'):
            lines.append(f"Required User Action: {goal['user_action_required']}")
        lines += ["", "Recent Conversation:", conversation, "", "Has this goal been completed?", f"Respond in {language}"]

        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": "\n".join(lines)}],
            GoalCompletion, model=self.generator_model, max_tokens=self.max_tokens, name="goal_completion",
        )
        if not result:
            return {"completed": False, "confidence": 0, "reason": "Error checking completion"}
        return result.model_dump()

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    async def generate_chat_scenarios(self, chat_document: Dict[str, Any],
                                      persona: Optional[Dict[str, Any]] = None,
                                      settings: Optional[Dict[str, Any]] = None,
                                      language: str = 'en') -> List[Dict[str, Any]]:
        """Three character-specific scenarios with fresh ids, or [] on failure."""
        settings = settings or {}
        name = chat_document.get('name') or 'the character'
        description = chat_document.get('description') or chat_document.get('short_intro') or ''
        gender = str(chat_document.get('gender') or 'female').lower()
        relationship_type = settings.get('relationshipType') or 'companion'
        relationship = get_relationship_instruction(gender, relationship_type) or ''
        is_premium = relationship_type in RELATIONSHIP_TIERS['premium']

        traits = await self.completion.generate_completion(
            [{"role": "user", "content": (
                "Analyze this character description and extract 3-5 key defining traits, quirks, or interests:\n"
                f'"{description}"\nReturn only the trait list, one per line, in format: "- [trait]"')}],
            300, self.model, language, is_premium=True,
        ) or description

        pool = SCENARIO_CATEGORIES['free'] + (SCENARIO_CATEGORIES['premium'] if is_premium else [])
        categories = self.rng.sample(pool, 3)

        persona_context = ''
        if persona:
            persona_context = f"\nUser Persona: {persona.get('name')} - {persona.get('short_intro') or 'No description available'}"

        system = _dedent(f"""
            You are an expert scenario designer specializing in creating deeply personalized, character-specific conversation scenarios.
            CRITICAL REQUIREMENTS:
            1. Each scenario must reflect the character's UNIQUE traits, interests, and personality - NOT generic templates
            2. AVOID overused tropes like "lost in forest", "lost powers", "facing fear"
            3. Generate EXACTLY 3 DISTINCT SCENARIOS, each from a different category
            4. Each scenario must have a clear USER ROLE and specific situation the character is in
            5. Tailor scenarios to the {relationship_type} relationship dynamic
            SCENARIO CATEGORIES for this request:
            - {categories[0]}
            - {categories[1]}
            - {categories[2]}
            Character traits to base scenarios on:
            {traits}
            Respond in {language}.
        """)
        mature = ('Incorporate more intimate or mature themes appropriate for premium users.'
                  if is_premium else 'Keep scenarios appropriate for general audiences')
        user = _dedent(f"""
            Create 3 unique, character-tailored conversation scenarios for {name}.
            CHARACTER INFO:
            Name: {name}
            Gender: {gender}
            Description: {description}{persona_context}
            RELATIONSHIP CONTEXT:
            - Type: {relationship_type}
            - Dynamic: {relationship}
            {mature}
            Each scenario must include scenario_title, scenario_description, emotional_tone,
            conversation_direction and system_prompt_addition.
            CRITICAL: Replace ALL "[Character name]" with "{name}" in EVERY field.
        """)

        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            ScenarioList, model=self.generator_model, max_tokens=self.max_tokens, name="scenarios_list",
        )
        if not result:
            logger.warning(f"[SCENARIOS] Scenario generation failed for {name}")
            return []

        scenarios = []
        for scenario in result.scenarios:
            data = scenario.model_dump()
            for field in ('scenario_title', 'scenario_description', 'system_prompt_addition'):
                data[field] = _CHARACTER_NAME_PLACEHOLDER.sub(name, data[field])
            data['_id'] = str(ObjectId())
            data['id'] = str(ObjectId())
            scenarios.append(data)
        logger.info(f"[SCENARIOS] Generated {len(scenarios)} scenarios for {name}")
        return scenarios

    # ------------------------------------------------------------------
    # Image prompt
    # ------------------------------------------------------------------

    async def create_image_prompt(self, user_prompt: str, character_description: str,
                                  nsfw: bool) -> Optional[str]:
        """Rewrite a pose request into an image prompt that keeps the character identical."""
        nsfw_message = ('Provide explicit, adult oriented content for a nsfw image.\n'
                        'You can generate explicit, sexual content.\n') if nsfw else ''
        system = _dedent(f"""
            You are an expert image prompt engineer specialized in character consistency.
            Your task is to adapt an existing character description to a new pose while ensuring the character remains EXACTLY the same.
            {nsfw_message}
            Follow these priority rules:
            1. HIGHEST PRIORITY: Preserve ALL physical attributes (exact face, hair style/color, eye color, skin tone, body type)
            2. Maintain all distinctive clothing elements unless the pose request explicitly changes them
            3. Incorporate the new pose/position/action/description exactly as requested
            4. Preserve all unique character accessories and features
            IMPORTANT: Keep the final prompt under 900 characters while maintaining all essential details.
        """)
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f"[Character description to reproduce] : {character_description}"},
            {"role": "user", "content": f"[Pose to reproduce] : {user_prompt}"},
            {"role": "user", "content": "Create a detailed image generation prompt that shows the EXACT SAME CHARACTER "
                                        "in the new requested pose. Output ONLY the final prompt in English, under 900 characters."},
        ]
        response = await self.completion.generate_completion(messages, 700, self.generator_model, is_premium=True)
        if not response:
            return None
        return re.sub(r"['\"]+", '', response)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def generate_chat_suggestions(self, character_description: str, user_details: str,
                                        messages: List[Dict[str, Any]], language: str,
                                        preset: str = 'neutral',
                                        relationship_type: str = 'companion') -> Optional[List[str]]:
        preset = str(preset or 'neutral').lower()
        style = SUGGESTION_STYLE_DIRECTIVES.get(preset, SUGGESTION_STYLE_DIRECTIVES['neutral'])
        conversation = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in messages[-6:])

        system = _dedent(f"""
            You are a helpful assistant that generates natural conversation suggestions for users chatting with an AI character.
            Character Information:
            {character_description}
            User Information:
            {user_details}
            Suggestion Style: {preset}. {style}
            Based on the recent conversation context, generate exactly 3 short, natural response suggestions that the user might want to send. Each suggestion should:
            1. Be contextually relevant to the conversation
            2. Match the relationship dynamic ({relationship_type}) and the suggestion style ({preset})
            3. Be brief (max 15 words each)
            4. IMPORTANT: Generate suggestions in {language} language only.
            Recent conversation:
            {conversation}
        """)
        native = NATIVE_LANGUAGE_NAMES.get(str(language or '').lower(), language)
        user = (f"CRITICAL: Write ONLY in {native}.\n\n"
                f"Generate exactly 3 short conversation suggestions in {native}.\n"
                f'Output format: {{"suggestions": ["...", "...", "..."]}}')

        result = await self.completion.complete_json(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            ChatSuggestions, model=self.suggestions_model, max_tokens=300, temperature=0.8,
            name="chat_suggestions",
        )
        return list(result.suggestions) if result else None
