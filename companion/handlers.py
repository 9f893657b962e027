"""
Side-effect handlers invoked by the completion pipeline.

- handle_image_generation: charge points, queue the image job, and build the
  short acknowledgment turn injected into the next completion
- handle_chat_goals: create, check and reward conversation goals
- handle_gallery_image: drop a random gallery image into the transcript
"""

import logging
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from companion.chat_settings import get_user_min_images
from companion.database import (
    db_get_gallery, db_get_prompt, db_get_tasks, db_increment_goal_completion,
    db_push_gallery_image_once, db_set_user_chat_fields,
)
from companion.points import (
    InsufficientPointsError, add_user_points, get_image_generation_cost, remove_user_points,
)
from companion.services import Services
from companion.transcript import tokyo_timestamp

logger = logging.getLogger(__name__)

IMAGE_ACTIVATED_DEFAULT = ('I activated the image generation feature for this prompt.\n'
                           ' The image will be generated shortly.')
INSUFFICIENT_POINTS_DEFAULT = (
    'I asked for an other image but I do not have enough points.\n'
    ' Tell me that I can buy points. Provide a concise answer to inform me of that and tell me if I want to '
    'subscribe there is 70% promotion right now. Stay in your character, keep the same tone as previously. '
    'Respond in the language we were talking until now.'
)
TOO_MANY_PENDING_DEFAULT = 'You already have several images being generated. Please wait a moment.'
GOAL_COMPLETED_DEFAULT = 'Goal completed! You earned {{points}} points.'

MAX_IMAGES_PER_REQUEST = 5


@dataclass
class TurnContext:
    """Identity and translations for one completion turn."""
    services: Services
    user_id: str
    chat_id: str
    user_chat_id: str
    translations: Dict[str, Any] = field(default_factory=dict)
    is_admin: bool = False
    request_id: str = ''

    def t(self, *path: str, default: str = '') -> str:
        """Nested translation lookup, e.g. ctx.t('image_generation', 'activated')."""
        node: Any = self.translations
        for key in path:
            if not isinstance(node, dict):
                return default
            node = node.get(key)
        return node if isinstance(node, str) and node else default

    async def notify(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.services.hub.send_notification_to_user(self.user_id, event, payload)


def _placeholder_id(ctx: TurnContext) -> str:
    suffix = ''.join(ctx.services.rng.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"auto_{int(time.time() * 1000)}_{suffix}"


# ============================================================================
# IMAGE GENERATION
# ============================================================================

async def handle_image_generation(ctx: TurnContext, current_user_message: Dict[str, Any],
                                  last_user_message: Dict[str, Any], gen_image: Dict[str, Any],
                                  character_description: str) -> Tuple[Optional[List[Dict[str, Any]]], Dict[str, Any]]:
    """
    Handle an image request carried by the current user message.

    Mutates current_user_message (name becomes 'context' once the request is
    answered) and gen_image.

    Returns:
        (img_message, gen_image); img_message is None when nothing needs to
        be injected into the completion
    """
    name = current_user_message.get('name')
    if not current_user_message.get('image_request') or name in ('master', 'context'):
        return None, gen_image

    services = ctx.services
    db = services.db
    gen_image.update({'image_request': True, 'canAfford': True, 'image_num': 1})
    gen_image.setdefault('nsfw', False)

    prompt_id = current_user_message.get('promptId')
    if prompt_id:
        custom_prompt = db_get_prompt(db, prompt_id)
        if custom_prompt:
            gen_image['nsfw'] = custom_prompt.get('nsfw') == 'on'
            gen_image['promptId'] = prompt_id
            gen_image['customPose'] = custom_prompt.get('prompt')

    min_images = get_user_min_images(db, ctx.user_id, ctx.chat_id)
    gen_image['image_num'] = max(gen_image.get('image_num') or 1, min_images or 1)

    img_message = [{'role': 'user', 'name': 'master'}]

    pending_tasks = db_get_tasks(db, 'pending', ctx.user_id)
    max_pending = int(services.config.get('pipeline', {}).get('max_pending_image_tasks', 5))
    if len(pending_tasks) > max_pending and not ctx.is_admin:
        logger.info(f"[IMAGE] {len(pending_tasks)} pending tasks for {ctx.user_id}, request skipped")
        await ctx.notify('showNotification', {
            'message': ctx.t('too_many_pending_images', default=TOO_MANY_PENDING_DEFAULT),
            'icon': 'warning',
        })
        gen_image['image_request'] = False
        return None, gen_image

    image_num = min(max(gen_image.get('image_num') or 1, 1), MAX_IMAGES_PER_REQUEST)
    gen_image['image_num'] = image_num

    if not prompt_id:
        cost = get_image_generation_cost(image_num, services.config)
        try:
            await remove_user_points(
                db, ctx.user_id, cost,
                ctx.t('points', 'deduction_reasons', 'image_generation', default='Image generation'),
                'image_generation', hub=services.hub,
            )
        except InsufficientPointsError as e:
            logger.info(f"[IMAGE] Cannot charge {ctx.user_id}: {e}")
            gen_image['canAfford'] = False

    if not gen_image['canAfford']:
        gen_image['image_request'] = False
        img_message[0]['content'] = ctx.t('image_generation', 'insufficient_points',
                                          default=INSUFFICIENT_POINTS_DEFAULT).strip()
        current_user_message['name'] = 'context'
        await ctx.notify('openBuyPointsModal', {'userId': ctx.user_id})
        return img_message, gen_image

    await ctx.notify('addIconToLastUserMessage')

    placeholder_id = _placeholder_id(ctx)
    for _ in range(image_num):
        await ctx.notify('handleLoader', {'imageId': placeholder_id, 'action': 'show'})

    image_type = 'nsfw' if gen_image.get('nsfw') else 'sfw'
    user_prompt = last_user_message.get('content') or ''

    async def generate():
        prompt = await services.classifiers.create_image_prompt(user_prompt, character_description,
                                                                image_type == 'nsfw')
        if not prompt:
            raise RuntimeError('Image prompt generation returned nothing')
        prompt = ' '.join(prompt.splitlines()).strip()
        return await services.images.generate_img(
            prompt=prompt, userId=ctx.user_id, chatId=ctx.chat_id, userChatId=ctx.user_chat_id,
            imageType=image_type, image_num=image_num, chatCreation=False,
            placeholderId=placeholder_id, customPromptId=gen_image.get('promptId'),
            isAutoGeneration=True,
        )

    async def on_done(outcome):
        if outcome.ok and (outcome.value or {}).get('taskId'):
            logger.info(f"[IMAGE] Generation started with taskId {outcome.value['taskId']}")
            await ctx.notify('registerAutoGeneration', {
                'taskId': outcome.value['taskId'],
                'placeholderId': placeholder_id,
                'userChatId': ctx.user_chat_id,
                'startTime': int(time.time() * 1000),
            })
        elif outcome.ok:
            logger.warning("[IMAGE] No taskId returned from image service")
        else:
            await ctx.notify('handleLoader', {'imageId': placeholder_id, 'action': 'remove'})

    services.runner.spawn(f"image:{placeholder_id}", generate, on_done=on_done)

    img_message[0]['content'] = ctx.t('image_generation', 'activated', default=IMAGE_ACTIVATED_DEFAULT).strip()
    current_user_message['name'] = 'context'
    return img_message, gen_image


# ============================================================================
# GOALS
# ============================================================================

def goal_reward(difficulty: Optional[str], config: Dict[str, Any]) -> int:
    pricing = config.get('pricing', {})
    if difficulty == 'easy':
        return int(pricing.get('goal_reward_easy', 100))
    if difficulty == 'medium':
        return int(pricing.get('goal_reward_medium', 200))
    return int(pricing.get('goal_reward_hard', 300))


async def _new_goal(ctx: TurnContext, chat_description: str, persona, settings, subscription_status: bool,
                    language: str, gender: Optional[str]) -> Optional[Dict[str, Any]]:
    goal = await ctx.services.classifiers.generate_chat_goal(
        chat_description, persona, settings, subscription_status, language, gender)
    if goal:
        db_set_user_chat_fields(ctx.services.db, ctx.user_chat_id,
                                {'currentGoal': goal, 'goalCreatedAt': datetime.utcnow()})
    return goal


async def handle_chat_goals(ctx: TurnContext, user_chat: Dict[str, Any], chat_description: str,
                            persona: Optional[Dict[str, Any]], settings: Dict[str, Any],
                            subscription_status: bool, language: str,
                            gender: Optional[str] = None) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Returns (chat_goal, goal_completion)."""
    services = ctx.services
    pipeline_cfg = services.config.get('pipeline', {})
    short_conversation = int(pipeline_cfg.get('goal_short_conversation', 3))
    threshold = float(pipeline_cfg.get('goal_confidence_threshold', 70))

    messages = user_chat.get('messages') or []
    message_count = sum(1 for m in messages if m.get('role') in ('user', 'assistant'))
    current_goal = user_chat.get('currentGoal')

    if message_count <= short_conversation or not current_goal:
        goal = await _new_goal(ctx, chat_description, persona, settings, subscription_status, language, gender)
        return goal, None

    goal_completion = await services.classifiers.check_goal_completion(current_goal, messages, language)
    if not (goal_completion.get('completed') and goal_completion.get('confidence', 0) > threshold):
        return current_goal, goal_completion

    logger.info(f"[GOALS] Goal completed for {ctx.user_chat_id} "
                f"(confidence {goal_completion.get('confidence')})")
    completed = list(user_chat.get('completedGoals') or [])
    completed.append({**current_goal, 'completedAt': datetime.utcnow(), 'reason': goal_completion.get('reason')})
    db_set_user_chat_fields(services.db, ctx.user_chat_id, {'completedGoals': completed, 'currentGoal': None})
    db_increment_goal_completion(services.db, ctx.user_id, ctx.chat_id)

    reward = goal_reward(current_goal.get('difficulty'), services.config)
    await ctx.notify('showNotification', {
        'message': ctx.t('chat_goal_completed', default=GOAL_COMPLETED_DEFAULT).replace('{{points}}', str(reward)),
        'icon': 'success',
    })
    await add_user_points(
        services.db, ctx.user_id, reward,
        ctx.t('points', 'reward_reasons', 'goal_completion', default='Goal completion reward'),
        'goal_completion', hub=services.hub,
    )

    goal = await _new_goal(ctx, chat_description, persona, settings, subscription_status, language, gender)
    return goal, goal_completion


# ============================================================================
# GALLERY
# ============================================================================

async def handle_gallery_image(ctx: TurnContext, last_user_message: Dict[str, Any],
                               user_chat: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Returns the inserted image message, or None when nothing was inserted."""
    if not last_user_message.get('sendImage'):
        return None

    services = ctx.services
    gallery = db_get_gallery(services.db, user_chat.get('chatId') or ctx.chat_id)
    images = (gallery or {}).get('images') or []
    if not images:
        return None

    image = services.rng.choice(images)
    image_id = str(image.get('_id'))
    await ctx.notify('imageGenerated', {
        'userChatId': ctx.user_chat_id,
        'imageId': image_id,
        'imageUrl': image.get('imageUrl'),
        'title': image.get('title'),
        'prompt': image.get('prompt'),
        'nsfw': image.get('nsfw'),
    })

    now = tokyo_timestamp()
    image_message = {
        'role': 'assistant',
        'type': 'image',
        'imageId': image_id,
        'imageUrl': image.get('imageUrl'),
        'content': f"I generated an image for you! It describes: {image.get('prompt')}",
        'timestamp': now,
        'createdAt': datetime.utcnow(),
    }
    if db_push_gallery_image_once(services.db, ctx.user_id, ctx.user_chat_id, image_message, now):
        user_chat.setdefault('messages', []).append(image_message)
        logger.info(f"[GALLERY] Image {image_id} added to {ctx.user_chat_id}")
        return image_message
    logger.info(f"[GALLERY] Image {image_id} already in {ctx.user_chat_id}, skipping")
    return None
