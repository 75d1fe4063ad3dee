"""
Environment Guard
=================
Keeps publication credentials out of every step environment.

Step environments are built from the pipeline definition only; nothing is
inherited from the host process. ``scrub`` removes any variable that is a
configured publication credential or looks like a secret, and ``audit``
fails loudly if one is still present in any step, trusted run or not.
"""
import logging
import re
from typing import Dict, Iterable, List

from covpipe.core.config import PUBLICATION_CREDENTIALS
from covpipe.core.errors import CredentialLeakError

logger = logging.getLogger(__name__)

_SECRET_NAME = re.compile(r"(TOKEN|SECRET|PASSWORD|API_KEY|PRIVATE_KEY)$", re.IGNORECASE)


def is_credential(name: str, credentials: Iterable[str] = PUBLICATION_CREDENTIALS) -> bool:
    return name in set(credentials) or bool(_SECRET_NAME.search(name))


def scrub(env: Dict[str, str], credentials: Iterable[str] = PUBLICATION_CREDENTIALS) -> Dict[str, str]:
    """Return a copy of ``env`` with credential-like variables removed."""
    credentials = list(credentials)
    clean = {}
    for name, value in env.items():
        if is_credential(name, credentials):
            logger.warning("Dropping credential-like variable %s from step environment", name)
            continue
        clean[name] = value
    return clean


def audit(step: str, env_keys: List[str], credentials: Iterable[str] = PUBLICATION_CREDENTIALS) -> None:
    """
    Raise CredentialLeakError if any credential name is in ``env_keys``.

    Called before every step of every run; pushes to the primary branch
    are audited the same way as pull requests.
    """
    leaked = sorted(k for k in env_keys if is_credential(k, credentials))
    if leaked:
        raise CredentialLeakError(
            f"Credential(s) {', '.join(leaked)} present in step '{step}'",
            step=step,
        )
