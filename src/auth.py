import logging
from datetime import datetime
from typing import Optional, List

from schema import User, UserRole, Config

logger = logging.getLogger(__name__)

EDITOR_ROLES = (UserRole.ADMIN, UserRole.EDITOR)


class StubAuthenticator:
    """
    Đăng nhập giả lập: chỉ so khớp một cặp email/password cấu hình sẵn.
    Không phải cơ chế bảo mật thật.
    """

    def __init__(
        self,
        users: List[User],
        admin_email: str = Config.DEFAULT_ADMIN_EMAIL,
        admin_password: str = Config.DEFAULT_ADMIN_PASSWORD
    ):
        self.users = {u.email.lower(): u for u in users}
        self.admin_email = admin_email.lower()
        self.admin_password = admin_password
        self.current_user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return self.current_user is not None

    def login(self, email: str, password: str) -> Optional[User]:
        email = (email or "").strip().lower()
        if email != self.admin_email or password != self.admin_password:
            logger.info(f"Login rejected for {email}")
            return None

        user = self.users.get(email) or User(
            id="admin", name="Admin User", email=email, role=UserRole.ADMIN
        )
        user.last_login = datetime.now()
        self.current_user = user
        logger.info(f"Login: {user.name} ({user.role.value})")
        return user

    def logout(self) -> None:
        if self.current_user:
            logger.info(f"Logout: {self.current_user.name}")
        self.current_user = None


def can_edit(user: Optional[User]) -> bool:
    return user is not None and user.role in EDITOR_ROLES
