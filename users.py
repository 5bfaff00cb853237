import logging
import re
from typing import List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, now_utc, oid
from errors import Conflict, Invalid, NotFound
from schemas import User

logger = logging.getLogger(__name__)

ROLES = ("user", "admin")


class UserDirectory:
    def __init__(self, database: Database):
        self.collection = database["user"]
        self.db = database

    def signup(self, user: User) -> str:
        if self.collection.find_one({"email": user.email}):
            raise Conflict("User already exists")
        try:
            user_id = create_document(self.db, "user", user)
        except DuplicateKeyError:
            raise Conflict("User already exists")
        logger.info("User %s signed up", user.email)
        return user_id

    def get_role(self, email: str) -> str:
        if not email:
            raise Invalid("Email is required")
        user = self.collection.find_one({"email": email})
        if not user:
            raise NotFound("User not found")
        return user.get("role") or "user"

    def list_all(self) -> List[dict]:
        return get_documents(self.db, "user", sort=[("created_at", -1)])

    def search(self, email_fragment: str) -> List[dict]:
        q = {}
        if email_fragment:
            q["email"] = {"$regex": re.escape(email_fragment), "$options": "i"}
        return get_documents(self.db, "user", q, limit=50)

    def set_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise Invalid("Invalid role. Must be user or admin")
        self._set(user_id, {"role": role})
        logger.info("User %s role set to %s", user_id, role)

    def set_banned(self, user_id: str, banned: bool) -> None:
        self._set(user_id, {"is_banned": bool(banned)})
        logger.info("User %s banned=%s", user_id, banned)

    def _set(self, user_id: str, fields: dict) -> None:
        result = self.collection.update_one(
            {"_id": oid(user_id)}, {"$set": {**fields, "updated_at": now_utc()}}
        )
        if result.matched_count == 0:
            raise NotFound("User not found")
