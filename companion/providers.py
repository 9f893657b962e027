"""
Provider Registry

Database-backed catalog of LLM providers and chat models. The built-in rows
are immutable pydantic records; seeding copies them into the `chatProviders`
and `chatModels` collections exactly once (a collection is only seeded while
it is empty).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pymongo import ASCENDING
from pymongo.database import Database

logger = logging.getLogger(__name__)


class ProviderSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    displayName: str
    baseUrl: str
    description: str = ""
    requiresApiKey: bool = True
    envKeyName: str
    isActive: bool = True


class ModelSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    displayName: str
    description: str
    provider: str
    modelId: str
    apiUrl: str
    isActive: bool = True
    category: str = "free"
    maxTokens: int = 2048
    supportedLanguages: Tuple[str, ...] = ("en",)


_ALL_LANGS = ("en", "fr", "ja", "hi")
_NOVITA_URL = "https://api.novita.ai/v3/openai/chat/completions"

DEFAULT_PROVIDERS: Tuple[ProviderSpec, ...] = (
    ProviderSpec(name="openai", displayName="OpenAI",
                 baseUrl="https://api.openai.com/v1/chat/completions",
                 description="OpenAI GPT models", envKeyName="OPENAI_API_KEY"),
    ProviderSpec(name="novita", displayName="Novita AI", baseUrl=_NOVITA_URL,
                 description="Novita AI models with OpenAI compatibility", envKeyName="NOVITA_API_KEY"),
    ProviderSpec(name="anthropic", displayName="Anthropic",
                 baseUrl="https://api.anthropic.com/v1/messages",
                 description="Anthropic Claude models", envKeyName="ANTHROPIC_API_KEY"),
    ProviderSpec(name="google", displayName="Google AI",
                 baseUrl="https://generativelanguage.googleapis.com/v1beta/models",
                 description="Google Gemini models", envKeyName="GOOGLE_AI_API_KEY"),
    ProviderSpec(name="segmind", displayName="Segmind", baseUrl="https://api.segmind.com/v1",
                 description="Segmind AI models including Grok 2 Vision", envKeyName="SEGMIND_API_KEY"),
)

DEFAULT_MODELS: Tuple[ModelSpec, ...] = (
    ModelSpec(key="gpt-4o", displayName="OpenAI GPT-4o", description="Advanced reasoning and creativity",
              provider="openai", modelId="gpt-4o", apiUrl="https://api.openai.com/v1/chat/completions",
              category="premium", maxTokens=4096, supportedLanguages=_ALL_LANGS),
    ModelSpec(key="llama-3-70b", displayName="Llama 3 70B", description="Large-scale reasoning and analysis",
              provider="novita", modelId="meta-llama/llama-3-70b-instruct", apiUrl=_NOVITA_URL,
              category="premium", maxTokens=4096, supportedLanguages=_ALL_LANGS),
    ModelSpec(key="deepseek-v3-turbo", displayName="DeepSeek V3 Turbo", description="Advanced coding and reasoning",
              provider="novita", modelId="deepseek/deepseek-v3-turbo", apiUrl=_NOVITA_URL,
              category="premium", maxTokens=4096, supportedLanguages=_ALL_LANGS),
    ModelSpec(key="hermes-2-pro", displayName="Hermes 2 Pro", description="Balanced performance and speed",
              provider="novita", modelId="nousresearch/hermes-2-pro-llama-3-8b", apiUrl=_NOVITA_URL,
              category="free", maxTokens=2048, supportedLanguages=_ALL_LANGS),
    ModelSpec(key="mistral-nemo", displayName="Mistral Nemo", description="Fast and efficient responses",
              provider="novita", modelId="mistralai/mistral-nemo", apiUrl=_NOVITA_URL,
              category="free", maxTokens=2048, supportedLanguages=_ALL_LANGS),
    ModelSpec(key="grok-2-vision", displayName="Grok 2 Vision",
              description="Advanced vision-enabled AI with excellent reasoning",
              provider="segmind", modelId="grok-2-vision", apiUrl="https://api.segmind.com/v1/grok-2-vision",
              category="free", maxTokens=4096, supportedLanguages=_ALL_LANGS),
)

MODEL_REQUIRED_FIELDS = ("key", "displayName", "description", "provider", "modelId", "apiUrl")

# Fields callers may not overwrite through update_model_by_key
_PROTECTED_FIELDS = ("_id", "key", "createdAt")


def tier_filter(is_premium: bool) -> Dict[str, Any]:
    """Premium users may use any model; free users only non-premium ones."""
    return {} if is_premium else {"category": {"$ne": "premium"}}


def _to_document(spec: BaseModel, now: datetime) -> Dict[str, Any]:
    doc = spec.model_dump()
    if "supportedLanguages" in doc:
        doc["supportedLanguages"] = list(doc["supportedLanguages"])
    doc["createdAt"] = now
    doc["updatedAt"] = now
    return doc


class ProviderRegistry:
    """
    Data access for the provider/model catalog.

    The registry is injected into the completion client and the settings
    helpers; it holds no state beyond the database handle.
    """

    def __init__(self, db: Database,
                 providers: Tuple[ProviderSpec, ...] = DEFAULT_PROVIDERS,
                 models: Tuple[ModelSpec, ...] = DEFAULT_MODELS):
        self.db = db
        self.default_providers = providers
        self.default_models = models

    @property
    def providers(self):
        return self.db["chatProviders"]

    @property
    def models(self):
        return self.db["chatModels"]

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_providers(self) -> int:
        if self.providers.count_documents({}) > 0:
            logger.info("[REGISTRY] Chat providers already initialized")
            return 0
        now = datetime.utcnow()
        result = self.providers.insert_many([_to_document(p, now) for p in self.default_providers])
        logger.info(f"[REGISTRY] Initialized {len(result.inserted_ids)} default chat providers")
        return len(result.inserted_ids)

    def seed_models(self) -> int:
        if self.models.count_documents({}) > 0:
            logger.info("[REGISTRY] Chat models already initialized")
            return 0
        now = datetime.utcnow()
        result = self.models.insert_many([_to_document(m, now) for m in self.default_models])
        logger.info(f"[REGISTRY] Initialized {len(result.inserted_ids)} default chat models")
        return len(result.inserted_ids)

    def seed_defaults(self) -> Tuple[int, int]:
        """Seed providers first, then models. Returns (providers_inserted, models_inserted)."""
        return self.seed_providers(), self.seed_models()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_provider_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.providers.find_one({"name": name, "isActive": True})

    def get_model_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        return self.models.find_one({"key": key, "isActive": True})

    def get_all_providers(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        query = {} if include_inactive else {"isActive": True}
        return list(self.providers.find(query).sort("displayName", ASCENDING))

    def get_all_models(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        query = {} if include_inactive else {"isActive": True}
        return list(self.models.find(query).sort("displayName", ASCENDING))

    def first_model_for_tier(self, is_premium: bool, provider: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """First active model (by display name) the tier is allowed to use."""
        query: Dict[str, Any] = {"isActive": True, **tier_filter(is_premium)}
        if provider:
            query["provider"] = provider
        for model in self.models.find(query).sort("displayName", ASCENDING).limit(1):
            return model
        return None

    def get_available_models_formatted(self, include_inactive: bool = False,
                                       is_premium: Optional[bool] = None) -> Dict[str, Dict[str, Any]]:
        """Models keyed by `key`, optionally restricted to what a tier may use."""
        formatted = {}
        for model in self.get_all_models(include_inactive):
            if is_premium is False and model.get("category") == "premium":
                continue
            formatted[model["key"]] = {
                "_id": str(model["_id"]),
                "key": model["key"],
                "displayName": model.get("displayName"),
                "description": model.get("description"),
                "provider": model.get("provider"),
                "modelId": model.get("modelId"),
                "category": model.get("category"),
                "maxTokens": model.get("maxTokens"),
                "isActive": model.get("isActive"),
                "supportedLanguages": model.get("supportedLanguages", []),
            }
        return formatted

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_model(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new model row.

        Raises:
            ValueError: a required field is missing or the key already exists
        """
        for field in MODEL_REQUIRED_FIELDS:
            if not data.get(field):
                raise ValueError(f"Missing required field: {field}")
        if self.models.find_one({"key": data["key"]}):
            raise ValueError(f"Model with key '{data['key']}' already exists")

        now = datetime.utcnow()
        model = {
            **{field: data[field] for field in MODEL_REQUIRED_FIELDS},
            "isActive": data.get("isActive", True),
            "category": data.get("category", "free"),
            "maxTokens": data.get("maxTokens", 2048),
            "supportedLanguages": list(data.get("supportedLanguages") or ["en"]),
            "createdAt": now,
            "updatedAt": now,
        }
        result = self.models.insert_one(model)
        model["_id"] = result.inserted_id
        logger.info(f"[REGISTRY] Added model {model['key']}")
        return model

    def update_model_by_key(self, key: str, updates: Dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k not in _PROTECTED_FIELDS}
        fields["updatedAt"] = datetime.utcnow()
        result = self.models.update_one({"key": key}, {"$set": fields})
        return result.matched_count > 0

    def delete_model_by_key(self, key: str) -> bool:
        result = self.models.delete_one({"key": key})
        return result.deleted_count > 0
