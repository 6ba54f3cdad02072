"""
User lookups needed by delivery: email recipient and active users.
"""
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from app.infrastructure.db.models import User


@dataclass(frozen=True)
class Recipient:
    user_id: int
    email: str
    username: str


class UserDirectory:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_recipient(self, user_id: int) -> Recipient | None:
        with self.session_factory() as db:
            user = db.query(User).filter(User.id == user_id).first()
            if user is None or not user.email:
                return None
            return Recipient(user_id=user.id, email=user.email, username=user.username)

    def active_user_ids(self) -> list[int]:
        with self.session_factory() as db:
            rows = db.query(User.id).filter(User.is_active.is_(True)).order_by(User.id).all()
            return [r[0] for r in rows]
