import logging
from typing import List, Optional

from pydantic import ValidationError as SchemaError

import codec
import events
from database import USERS_KEY
from errors import NotFound, ValidationError, as_result
from schemas import User, utcnow

logger = logging.getLogger(__name__)


class UserDirectory:
    """User records written on each successful sign-in from the identity provider."""

    def __init__(self, store, locks, bus: Optional[events.EventBus] = None):
        self.store = store
        self.locks = locks
        self.bus = bus

    def _load(self) -> List[User]:
        return codec.load(self.store, USERS_KEY, codec.decode_user)

    def _publish(self, action: str, user_id: str) -> None:
        if self.bus is not None:
            self.bus.publish(events.USERS, action=action, user_id=user_id)

    def list_users(self) -> List[User]:
        return self._load()

    def get_user(self, user_id: str) -> Optional[User]:
        return next((u for u in self._load() if u.id == user_id), None)

    @as_result
    def record_login(self, user_id: str, email: str, display_name: Optional[str] = None) -> User:
        if not user_id:
            raise ValidationError("Login event requires a user id")
        now = utcnow()
        with self.locks.hold(USERS_KEY):
            users = self._load()
            user = next((u for u in users if u.id == user_id), None)
            if user is not None:
                user.last_login = now
                user.login_count += 1
            else:
                try:
                    user = User(
                        id=user_id,
                        email=email,
                        display_name=display_name or (email or "").split("@")[0],
                        created_at=now,
                        last_login=now,
                        login_count=1,
                    )
                except SchemaError as e:
                    raise ValidationError(f"Invalid user: {e.errors()[0]['msg']}")
                users.append(user)
            codec.save(self.store, USERS_KEY, users)
        logger.info("Login recorded for %s (count %d)", user.email, user.login_count)
        self._publish("login", user_id)
        return user

    @as_result
    def set_active(self, user_id: str, is_active: bool) -> User:
        with self.locks.hold(USERS_KEY):
            users = self._load()
            user = next((u for u in users if u.id == user_id), None)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            user.is_active = bool(is_active)
            codec.save(self.store, USERS_KEY, users)
        self._publish("activated" if user.is_active else "deactivated", user_id)
        return user

    @as_result
    def delete_user(self, user_id: str) -> str:
        with self.locks.hold(USERS_KEY):
            users = self._load()
            remaining = [u for u in users if u.id != user_id]
            if len(remaining) == len(users):
                raise NotFound(f"User {user_id} not found")
            codec.save(self.store, USERS_KEY, remaining)
        self._publish("deleted", user_id)
        return user_id
