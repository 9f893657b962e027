"""
User points (the in-app currency).

Balance changes are single atomic updates on `users.points`; a deduction only
matches when the balance covers it, so concurrent deductions can never drive
the balance negative. Every movement writes a `points_history` row and pushes
a `refreshUserPoints` notification.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from companion.config_loader import CONFIG
from companion.database import IdLike, to_object_id
from companion.notifications import NotificationHub

logger = logging.getLogger(__name__)


class InsufficientPointsError(Exception):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient points: {required} required, {available} available")
        self.required = required
        self.available = available


def get_image_generation_cost(image_num: int = 1, config: Optional[Dict[str, Any]] = None) -> int:
    per_image = int((config or CONFIG).get("pricing", {}).get("image_cost_per_image", 10))
    return max(1, int(image_num or 1)) * per_image


def get_user_points(db: Database, user_id: IdLike) -> int:
    user = db["users"].find_one({"_id": to_object_id(user_id)}, {"points": 1})
    return int((user or {}).get("points") or 0)


def _record_history(db: Database, user_id: IdLike, amount: int, reason: str, source: str,
                    balance: int) -> None:
    db["points_history"].insert_one({
        "userId": to_object_id(user_id),
        "points": amount,
        "type": "credit" if amount > 0 else "debit",
        "reason": reason,
        "source": source,
        "balanceAfter": balance,
        "createdAt": datetime.utcnow(),
    })


async def add_user_points(db: Database, user_id: IdLike, amount: int, reason: str = "",
                          source: str = "system", hub: Optional[NotificationHub] = None) -> int:
    """Credit points; returns the new balance."""
    user = db["users"].find_one_and_update(
        {"_id": to_object_id(user_id)},
        {"$inc": {"points": int(amount)}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise LookupError("User not found")
    balance = int(user.get("points") or 0)
    _record_history(db, user_id, int(amount), reason, source, balance)
    logger.info(f"[POINTS] +{amount} for {user_id} ({source}), balance {balance}")
    if hub is not None:
        await hub.send_notification_to_user(str(user_id), "refreshUserPoints", {"points": balance})
    return balance


async def remove_user_points(db: Database, user_id: IdLike, amount: int, reason: str = "",
                             source: str = "system", hub: Optional[NotificationHub] = None) -> int:
    """
    Debit points; returns the new balance.

    Raises:
        InsufficientPointsError: the balance does not cover `amount`
    """
    amount = int(amount)
    user = db["users"].find_one_and_update(
        {"_id": to_object_id(user_id), "points": {"$gte": amount}},
        {"$inc": {"points": -amount}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        available = get_user_points(db, user_id)
        logger.info(f"[POINTS] Refused -{amount} for {user_id}, balance {available}")
        raise InsufficientPointsError(amount, available)
    balance = int(user.get("points") or 0)
    _record_history(db, user_id, -amount, reason, source, balance)
    logger.info(f"[POINTS] -{amount} for {user_id} ({source}), balance {balance}")
    if hub is not None:
        await hub.send_notification_to_user(str(user_id), "refreshUserPoints", {"points": balance})
    return balance
