"""
Completion Pipeline

One chat turn, from the HTTP request to the pushed assistant message:

    validate -> load context -> regenerate incomplete character -> scenarios
    -> image request -> goals -> upsell -> build prompt -> dispatch

start_turn() runs everything up to the dispatch and returns the HTTP
response. The model call and what follows it (persist, notify, follow-up
image detection, gallery insert) run in a BackgroundRunner task; the browser
receives the result over the notification channel.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from companion.chat_settings import (
    get_auto_image_generation_setting, get_preferred_chat_language,
    get_user_chat_customizations, get_user_chat_tool_settings,
)
from companion.database import (
    db_get_chat, db_get_persona, db_get_user, db_get_user_chat,
    db_increment_messages_count, db_record_upsell_event, db_set_user_chat_fields,
    db_update_chat_last_message, db_update_user_chat, is_valid_object_id,
)
from companion.handlers import (
    TurnContext, handle_chat_goals, handle_gallery_image, handle_image_generation,
)
from companion.languages import get_language_name, is_japanese
from companion.outcome import ApiResponse, api_error
from companion.points import get_image_generation_cost, get_user_points
from companion.prompt_builder import (
    character_image_description, chat_data_to_string, current_time_in_japanese, user_details_to_string,
)
from companion.services import Services
from companion.transcript import tokyo_timestamp, transform_user_messages
from companion.translations import load_translations

logger = logging.getLogger(__name__)

UPSELL_PROMPT_DEFAULT = "Ask the user to upgrade to Premium to unlock uncensored chat and continue this vibe."
UPSELL_FOLLOWUP_DEFAULT = "Want more? Unlock Premium for uncensored chat."
PREMIUM_REQUIRED_DEFAULT = "Image request detected! Upgrade to Premium to automatically generate images."
INSUFFICIENT_FUNDS_DEFAULT = "You need {{points}} points to generate an image."


class ChatDocumentError(Exception):
    """The character document could not be loaded."""


@dataclass
class PreparedTurn:
    """Everything the background dispatch needs once the prompt is built."""
    ctx: TurnContext
    user: Dict[str, Any]
    user_chat: Dict[str, Any]
    chat_document: Dict[str, Any]
    last_user_message: Dict[str, Any]
    messages_for_completion: List[Dict[str, Any]]
    gen_image: Dict[str, Any]
    model: str
    language: str
    is_premium: bool
    custom_relation: str
    character_description: str
    unique_id: Optional[str] = None
    upsell_triggered: bool = False
    disable_image_analysis: bool = False


def _needs_regeneration(chat_document: Dict[str, Any]) -> bool:
    details = chat_document.get("details_description") or {}
    return not (chat_document.get("system_prompt") and details
                and (details.get("personality") or {}).get("reference_character"))


def _has_recent_upsell(events: List[Dict[str, Any]], window_hours: float, now: datetime) -> bool:
    cutoff = now - timedelta(hours=window_hours)
    for event in events:
        triggered_at = event.get("triggeredAt")
        if isinstance(triggered_at, str):
            try:
                triggered_at = datetime.fromisoformat(triggered_at)
            except ValueError:
                continue
        if isinstance(triggered_at, datetime) and triggered_at.replace(tzinfo=None) >= cutoff:
            return True
    return False


class CompletionPipeline:
    def __init__(self, services: Services):
        self.services = services
        self.pipeline_cfg = services.config.get("pipeline", {})

    # ------------------------------------------------------------------
    # Character document
    # ------------------------------------------------------------------

    async def get_chat_document(self, ctx: TurnContext) -> Dict[str, Any]:
        """
        Load the character, regenerating it when the profile predates the
        current format. Regeneration failures return the stored document.

        Raises:
            ChatDocumentError: no character with that id
        """
        chat_document = db_get_chat(self.services.db, ctx.chat_id)
        if not chat_document:
            raise ChatDocumentError(f"Chat not found for chatId: {ctx.chat_id}")
        if not _needs_regeneration(chat_document):
            return chat_document

        log = f"[PIPELINE:{ctx.request_id}]"
        if not (chat_document.get("characterPrompt") or "").strip():
            logger.warning(f"{log} Cannot regenerate {ctx.chat_id}, characterPrompt is empty")
            return chat_document

        look = chat_document.get("enhancedPrompt") or chat_document.get("characterPrompt")
        purpose = f"Her name is, {chat_document.get('name')}.\nShe looks like :{look}.\n\n{chat_document.get('rule')}"
        payload = {
            "userId": ctx.user_id,
            "chatId": ctx.chat_id,
            "name": chat_document.get("name"),
            "prompt": chat_document.get("characterPrompt"),
            "gender": chat_document.get("gender"),
            "nsfw": chat_document.get("nsfw"),
            "chatPurpose": purpose,
            "language": chat_document.get("language"),
        }
        url = self.services.config.get("server", {}).get("api_base_url", "").rstrip("/") + \
            "/api/generate-character-comprehensive"
        timeout = float(self.pipeline_cfg.get("regeneration_timeout", 120))

        logger.info(f"{log} Incomplete chat detected, regenerating {ctx.chat_id}")
        try:
            if self.services.http_client is not None:
                response = await self.services.http_client.post(url, json=payload, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
            chat_data = data.get("chatData") if isinstance(data, dict) else None
            if not chat_data:
                raise ValueError("Response missing chatData field")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{log} Regeneration failed: {e}, using incomplete document")
            return chat_document
        logger.info(f"{log} Chat {ctx.chat_id} regenerated")
        return chat_data

    # ------------------------------------------------------------------
    # Turn entry point
    # ------------------------------------------------------------------

    async def start_turn(self, body: Dict[str, Any], auth_user_id: Optional[str] = None,
                         translations: Optional[Dict[str, Any]] = None) -> ApiResponse:
        request_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        log = f"[PIPELINE:{request_id}]"
        try:
            chat_id = body.get("chatId")
            user_chat_id = body.get("userChatId")
            if not chat_id or not user_chat_id:
                logger.error(f"{log} Missing required parameters chatId={chat_id!r} userChatId={user_chat_id!r}")
                return api_error(400, "Missing required parameters: chatId and userChatId")

            body_user_id = body.get("userId")
            if auth_user_id and body_user_id and str(body_user_id) != str(auth_user_id):
                logger.warning(f"{log} Body userId {body_user_id} does not match token subject {auth_user_id}")
                return api_error(403, "userId does not match authenticated user")
            user_id = auth_user_id or body_user_id
            if not user_id:
                logger.error(f"{log} User not authenticated")
                return api_error(401, "User not authenticated")

            if not all(is_valid_object_id(v) for v in (chat_id, user_chat_id, user_id)):
                return api_error(400, "Invalid ObjectId format")

            prepared = await self._prepare(body, str(user_id), str(chat_id), str(user_chat_id),
                                           translations, request_id)
            if isinstance(prepared, ApiResponse):
                return prepared

            self.services.runner.spawn(f"completion:{request_id}", lambda: self._dispatch(prepared))
            return ApiResponse(200, {"success": True, "uniqueId": body.get("uniqueId")})
        except Exception as e:
            logger.exception(f"{log} Fatal error: {e}")
            return api_error(500, "Error fetching OpenAI completion", str(e))

    async def _prepare(self, body: Dict[str, Any], user_id: str, chat_id: str, user_chat_id: str,
                       translations: Optional[Dict[str, Any]], request_id: str):
        services = self.services
        db = services.db
        log = f"[PIPELINE:{request_id}]"

        user = db_get_user(db, user_id)
        settings = get_user_chat_tool_settings(db, user_id, chat_id)
        user_chat = db_get_user_chat(db, user_id, user_chat_id)
        if not user_chat or not user:
            logger.error(f"{log} User data not found for userChatId {user_chat_id}")
            return api_error(404, "User data not found")
        user_chat.setdefault("messages", [])

        if translations is None:
            translations = load_translations(user.get("lang"))
        subscription_status = user.get("subscriptionStatus") == "active"
        ctx = TurnContext(services, user_id, chat_id, user_chat_id, translations,
                          is_admin=user.get("role") == "admin", request_id=request_id)

        try:
            chat_document = await self.get_chat_document(ctx)
        except ChatDocumentError as e:
            logger.error(f"{log} Failed to fetch chat document: {e}")
            return api_error(400, "Failed to fetch chat document", str(e))

        nsfw = bool(chat_document.get("nsfw"))
        chat_description = chat_data_to_string(chat_document)
        character_description = character_image_description(chat_document)
        language = get_preferred_chat_language(db, user_id, chat_id) or get_language_name(user.get("lang"))

        await self._maybe_generate_scenarios(ctx, user_chat, chat_document, settings, language)

        messages = user_chat["messages"]
        if not messages:
            messages.append({"timestamp": tokyo_timestamp(), "createdAt": datetime.utcnow()})
        last_index = len(messages) - 1
        last_user_message = messages[last_index]

        last_assistant_relation = next(
            (m.get("custom_relation") for m in reversed(messages) if m.get("role") == "assistant"), None)

        transformed = transform_user_messages(messages, translations)

        gen_image: Dict[str, Any] = {}
        img_message, gen_image = await handle_image_generation(
            ctx, last_user_message, last_user_message, gen_image, character_description)

        persona = db_get_persona(db, user_chat["persona"]) if user_chat.get("persona") else None

        chat_goal = goal_completion = None
        goals_enabled = settings.get("goalsEnabled") is True
        if goals_enabled:
            chat_goal, goal_completion = await handle_chat_goals(
                ctx, user_chat, chat_description, persona, settings, subscription_status,
                language, chat_document.get("gender"))

        user_points = get_user_points(db, user_id)
        upsell_triggered, upsell_prompt = await self._maybe_upsell(
            ctx, user_chat, nsfw, subscription_status)

        prompts = services.prompts
        system_content = prompts.completion_system_content(
            chat_document, chat_description, current_time_in_japanese(), language,
            user_points, subscription_status, upsell_prompt)
        customizations = get_user_chat_customizations(db, user_id, chat_id)
        system_content = prompts.apply_user_settings_to_prompt(system_content, chat_document, customizations)

        if goals_enabled and chat_goal:
            system_content += prompts.goal_context(chat_goal)
        if goals_enabled and goal_completion:
            system_content += prompts.goal_status_context(goal_completion)

        latest = db_get_user_chat(db, user_id, user_chat_id) or {}
        if latest.get("currentScenario"):
            system_content += prompts.scenario_context(latest["currentScenario"], chat_document.get("name"))

        system_content += prompts.language_block(language)
        system_content = prompts.fill_points(system_content, user_points)
        system_content += prompts.user_details_block(user_details_to_string(persona or user))

        messages_for_completion = [{"role": "system", "content": system_content}, *transformed]
        if gen_image.get("image_request"):
            last_user_message["image_request"] = True
            messages[last_index] = last_user_message
            if img_message:
                messages_for_completion.extend(img_message)

        selected_model = settings.get("selectedModel") or (
            self.pipeline_cfg.get("japanese_model", "deepseek-v3-turbo") if is_japanese(language)
            else self.pipeline_cfg.get("default_model", "llama-3-70b"))

        return PreparedTurn(
            ctx=ctx,
            user=user,
            user_chat=user_chat,
            chat_document=chat_document,
            last_user_message=last_user_message,
            messages_for_completion=messages_for_completion,
            gen_image=gen_image,
            model=selected_model,
            language=language,
            is_premium=subscription_status,
            custom_relation=settings.get("relationshipType") or last_assistant_relation or "Casual",
            character_description=character_description,
            unique_id=body.get("uniqueId"),
            upsell_triggered=upsell_triggered,
            disable_image_analysis=body.get("disableImageAnalysis") is True,
        )

    # ------------------------------------------------------------------
    # Optional stages
    # ------------------------------------------------------------------

    async def _maybe_generate_scenarios(self, ctx: TurnContext, user_chat: Dict[str, Any],
                                        chat_document: Dict[str, Any], settings: Dict[str, Any],
                                        language: str) -> None:
        if (user_chat.get("scenarioGenerated") is True or user_chat.get("currentScenario") is not None
                or settings.get("scenariosEnabled") is not True):
            return
        try:
            persona = db_get_persona(self.services.db, user_chat["persona"]) if user_chat.get("persona") else None
            scenarios = await self.services.classifiers.generate_chat_scenarios(
                chat_document, persona, settings, language)
            if not scenarios:
                return
            db_set_user_chat_fields(self.services.db, ctx.user_chat_id, {
                "availableScenarios": scenarios,
                "scenarioCreatedAt": datetime.utcnow(),
                "scenarioGenerated": True,
            })
            await ctx.notify("showScenariosGenerated", {"scenarios": [
                {"id": str(s.get("_id") or s.get("id")), "title": s.get("scenario_title"),
                 "description": s.get("scenario_description")}
                for s in scenarios
            ]})
        except Exception as e:
            logger.warning(f"[PIPELINE:{ctx.request_id}] Scenario generation failed: {e}")

    async def _maybe_upsell(self, ctx: TurnContext, user_chat: Dict[str, Any], nsfw: bool,
                            subscription_status: bool):
        """Returns (triggered, upsell prompt)."""
        if subscription_status:
            return False, ""
        events = list(user_chat.get("upsellEvents") or [])
        window = float(self.pipeline_cfg.get("upsell_window_hours", 24))
        if _has_recent_upsell(events, window, datetime.utcnow()):
            return False, ""

        sample_size = int(self.pipeline_cfg.get("upsell_sample_size", 6))
        recent = [{"role": m.get("role"), "content": m.get("content")}
                  for m in user_chat.get("messages") or []
                  if m.get("content") and not str(m["content"]).startswith("[Image]")
                  and m.get("role") != "system" and m.get("name") != "context"][-sample_size:]
        if len(recent) < 2:
            return False, ""

        result = await self.services.classifiers.check_early_nsfw_upsell(
            recent, is_nsfw_character=nsfw, conversation_length=len(user_chat.get("messages") or []))
        threshold = float(self.pipeline_cfg.get("upsell_confidence", 0.6))
        if not (result.get("trigger") and (result.get("confidence") or 0) >= threshold):
            return False, ""

        event = {
            "type": "early_nsfw_push",
            "severity": result.get("severity") or "none",
            "confidence": result.get("confidence") or 0,
            "reason": result.get("reason"),
            "userIntent": result.get("user_intent"),
            "triggeredAt": datetime.utcnow(),
            "chatId": ctx.chat_id,
            "userChatId": ctx.user_chat_id,
        }
        user_chat["upsellEvents"] = events + [event]
        db_record_upsell_event(self.services.db, ctx.user_chat_id, user_chat["upsellEvents"])
        await ctx.notify("earlyNsfwUpsellDetected", {
            "chatId": ctx.chat_id,
            "userChatId": ctx.user_chat_id,
            "severity": event["severity"],
            "confidence": event["confidence"],
            "reason": event["reason"],
            "userIntent": event["userIntent"],
        })
        logger.info(f"[PIPELINE:{ctx.request_id}] Early NSFW upsell triggered ({event['confidence']})")
        return True, ctx.t("upsell", "character_prompt", default=UPSELL_PROMPT_DEFAULT)

    # ------------------------------------------------------------------
    # Background dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, turn: PreparedTurn) -> Optional[str]:
        services = self.services
        ctx = turn.ctx
        log = f"[PIPELINE:{ctx.request_id}]"

        outcome = await services.completion.complete(
            turn.messages_for_completion, max_tokens=None, model=turn.model, lang=turn.language,
            user_model_preference=turn.model, is_premium=turn.is_premium)
        completion = outcome.value if outcome.ok else None

        if not completion:
            logger.error(f"{log} No completion received ({outcome.error}: {outcome.detail}), hiding {turn.unique_id}")
            await ctx.notify("hideCompletionMessage", {"uniqueId": turn.unique_id})
        else:
            if turn.upsell_triggered and "premium" not in completion.lower():
                completion = f"{completion}\n\n{ctx.t('upsell', 'character_followup', default=UPSELL_FOLLOWUP_DEFAULT)}"
            await ctx.notify("displayCompletionMessage", {"message": completion, "uniqueId": turn.unique_id})

            assistant_message: Dict[str, Any] = {
                "role": "assistant",
                "content": completion,
                "timestamp": tokyo_timestamp(),
                "createdAt": datetime.utcnow(),
                "custom_relation": turn.custom_relation or "Casual",
            }
            name = turn.last_user_message.get("name")
            if name and name != "context":
                assistant_message["name"] = name
            if turn.gen_image.get("image_request"):
                assistant_message["image_request"] = True

            await self._persist(turn, assistant_message)
            await self._follow_up_image(turn, assistant_message)

        await handle_gallery_image(ctx, turn.last_user_message, turn.user_chat)
        return completion

    async def _persist(self, turn: PreparedTurn, assistant_message: Dict[str, Any]) -> None:
        ctx = turn.ctx
        db = self.services.db
        turn.user_chat["messages"].append(assistant_message)
        updated_at = tokyo_timestamp()
        async with self.services.locks.hold(ctx.user_chat_id):
            db_increment_messages_count(db, ctx.chat_id)
            db_update_chat_last_message(db, ctx.chat_id, ctx.user_id, assistant_message["content"], updated_at)
            db_update_user_chat(db, ctx.user_id, ctx.user_chat_id, turn.user_chat["messages"], updated_at)

    async def _follow_up_image(self, turn: PreparedTurn, assistant_message: Dict[str, Any]) -> None:
        ctx = turn.ctx
        services = self.services
        db = services.db
        last_user_message = turn.last_user_message

        threshold = int(self.pipeline_cfg.get("image_points_threshold", 50))
        if len(turn.messages_for_completion) <= 2 or get_user_points(db, ctx.user_id) < threshold:
            return
        if turn.disable_image_analysis or last_user_message.get("name") in ("pose_request", "gift_request"):
            logger.info(f"[PIPELINE:{ctx.request_id}] Skipping image analysis")
            return

        detected = await services.classifiers.check_image_request(
            assistant_message["content"], last_user_message.get("content"))
        if not detected.get("image_request"):
            return

        if turn.is_premium and get_auto_image_generation_setting(db, ctx.user_id, ctx.chat_id):
            last_user_message["content"] = f"{last_user_message.get('content') or ''} {assistant_message['content']}"
            _, gen_image = await handle_image_generation(
                ctx, detected, last_user_message, detected, turn.character_description)
            if not gen_image.get("canAfford"):
                cost = get_image_generation_cost(1, services.config)
                await ctx.notify("showNotification", {
                    "message": ctx.t("insufficientFunds", default=INSUFFICIENT_FUNDS_DEFAULT)
                    .replace("{{points}}", str(cost)),
                    "icon": "warning",
                })
        elif not turn.is_premium:
            logger.info(f"[PIPELINE:{ctx.request_id}] Image request detected for free user")
            await ctx.notify("imageRequestDetectedPremiumRequired", {
                "message": ctx.t("websocket", "imageRequestDetectedPremiumRequired",
                                 default=PREMIUM_REQUIRED_DEFAULT),
                "chatId": ctx.chat_id,
                "userChatId": ctx.user_chat_id,
            })
