"""
auth/delivery.py -- Out-of-band code delivery.

LoggingCodeSender is the default CodeSender: it records that a code was
dispatched without writing the code itself anywhere. Deployments plug a
mail or SMS gateway into the same send_code() signature.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from auth.models import User

logger = logging.getLogger("sessiontrust.auth.delivery")


class LoggingCodeSender:
    def send_code(self, user: User, code: str, purpose: str) -> None:
        logger.info("Dispatched %s code (%d chars) to user %s", purpose, len(code), user.id)
