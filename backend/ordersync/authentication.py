"""Back-office (sqladmin) login backend.

Single operator account from ADMIN_USERNAME / ADMIN_PASSWORD. A successful
login stores a signed flag in the Starlette session (SessionMiddleware,
ADMIN_SECRET_KEY). Without ADMIN_PASSWORD nobody can log in.
"""

import hmac
import logging

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

from ordersync.deps import get_settings

logger = logging.getLogger(__name__)

SESSION_KEY = "ordersync_admin"


class SimpleAuth(AuthenticationBackend):
    async def login(self, request: Request) -> bool:
        form = await request.form()
        username = str(form.get("username") or "")
        password = str(form.get("password") or "")

        settings = get_settings()
        if not settings.ADMIN_PASSWORD:
            logger.warning("[ADMIN] Login refused: ADMIN_PASSWORD is not configured")
            return False

        valid = hmac.compare_digest(username, settings.ADMIN_USERNAME) and hmac.compare_digest(
            password, settings.ADMIN_PASSWORD
        )
        if not valid:
            logger.warning("[ADMIN] Failed login for %s", username)
            return False

        request.session.update({SESSION_KEY: username})
        logger.info("[ADMIN] %s logged in", username)
        return True

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return bool(request.session.get(SESSION_KEY))
