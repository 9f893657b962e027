"""
Service container shared by the routes, the pipeline and the handlers.

Built once in the application lifespan (or directly in tests) so every
collaborator is injected instead of reached through module globals.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from pymongo.database import Database

from companion.background import BackgroundRunner, KeyedLock
from companion.classifiers import Classifiers
from companion.completion import CompletionClient
from companion.config_loader import CONFIG
from companion.images import HttpImageService, ImageService
from companion.notifications import NotificationHub
from companion.prompt_builder import PromptBuilder
from companion.providers import ProviderRegistry


@dataclass
class Services:
    db: Database
    config: Dict[str, Any]
    registry: ProviderRegistry
    completion: CompletionClient
    classifiers: Classifiers
    prompts: PromptBuilder
    hub: NotificationHub
    runner: BackgroundRunner
    images: ImageService
    http_client: Optional[httpx.AsyncClient] = None
    rng: random.Random = field(default_factory=random.Random)
    locks: KeyedLock = field(default_factory=KeyedLock)


def build_services(db: Database, config: Optional[Dict[str, Any]] = None,
                   http_client: Optional[httpx.AsyncClient] = None,
                   rng: Optional[random.Random] = None,
                   hub: Optional[NotificationHub] = None,
                   images: Optional[ImageService] = None,
                   completion: Optional[CompletionClient] = None,
                   env: Optional[Dict[str, str]] = None) -> Services:
    config = config or CONFIG
    rng = rng or random.Random()
    registry = ProviderRegistry(db)
    completion = completion or CompletionClient(registry, config, http_client=http_client, env=env)
    return Services(
        db=db,
        config=config,
        registry=registry,
        completion=completion,
        classifiers=Classifiers(completion, config, rng=rng),
        prompts=PromptBuilder(rng, config.get("pipeline", {}).get("image_points_threshold", 50)),
        hub=hub or NotificationHub(),
        runner=BackgroundRunner(),
        images=images or HttpImageService(config, http_client=http_client),
        http_client=http_client,
        rng=rng,
    )
