import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailable
from .models import User

logger = logging.getLogger(__name__)


class UserRegistry:
    """Identity rows for end users. Point columns are owned by the ledger."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _run(self, fn: Callable):
        db = self.session_factory()
        try:
            return fn(db)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("user registry operation failed")
            raise StoreUnavailable("user store unavailable") from e
        finally:
            db.close()

    async def find_or_create_user(
        self,
        platform: str,
        platform_user_id: str,
        name: Optional[str] = None,
        username: Optional[str] = None,
    ) -> User:
        def op(db):
            lookup = select(User).where(User.platform == platform, User.platform_user_id == platform_user_id)
            user = db.execute(lookup).scalar_one_or_none()
            if user is not None:
                return user
            user = User(platform=platform, platform_user_id=platform_user_id, name=name, username=username)
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                # another request created the same identity first
                db.rollback()
                return db.execute(lookup).scalar_one()
            logger.info("created user %s for %s:%s", user.id, platform, platform_user_id)
            return user

        return await asyncio.to_thread(self._run, op)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await asyncio.to_thread(self._run, lambda db: db.get(User, user_id))

    async def deactivate_user(self, user_id: str) -> bool:
        def op(db):
            result = db.execute(
                update(User)
                .where(User.id == user_id, User.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0

        return await asyncio.to_thread(self._run, op)
