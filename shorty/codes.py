"""Short-code allocation.

Caller-supplied codes are taken verbatim or rejected. Generated codes are
re-rolled on collision, both at the existence check and when the primary key
rejects the insert, and allocation fails once the attempts run out instead of
handing back a code that may already be taken.
"""
import logging
import re
import secrets
import string

from sqlalchemy.orm import Session

from shorty import crud, models

logger = logging.getLogger("shorty.codes")

ALPHABET = string.ascii_letters + string.digits
CODE_LENGTH = 6
MAX_ATTEMPTS = 5
CODE_RE = re.compile(r"[A-Za-z0-9]{6,8}")

# Top-level path segments that are routes, never short codes (compared lowercased)
RESERVED = {"api", "healthz", "links", "config", "code", "docs", "redoc", "openapi.json", "favicon.ico"}


class InvalidCode(ValueError):
    pass


class CodeExists(Exception):
    pass


class CodeUnavailable(Exception):
    """No free code found within MAX_ATTEMPTS."""


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def is_reserved(code: str) -> bool:
    return code.lower() in RESERVED


def is_valid_code(code) -> bool:
    return isinstance(code, str) and CODE_RE.fullmatch(code) is not None


def normalize_candidate(candidate: str | None) -> str | None:
    if candidate is None:
        return None
    return candidate.strip() or None


def _check_candidate(db: Session, candidate: str) -> str:
    if not is_valid_code(candidate) or is_reserved(candidate):
        raise InvalidCode(candidate)
    if crud.code_exists(db, candidate):
        raise CodeExists(candidate)
    return candidate


def _roll(db: Session) -> str | None:
    """One generation attempt; None when the code is reserved or taken."""
    code = generate_code()
    if is_reserved(code) or crud.code_exists(db, code):
        logger.debug("Generated code %s unusable", code)
        return None
    return code


def allocate(db: Session, candidate: str | None = None, attempts: int = MAX_ATTEMPTS) -> str:
    """Return a code that is free at the time of the check.

    The check is advisory; the insert that follows is what settles a race.
    """
    candidate = normalize_candidate(candidate)
    if candidate is not None:
        return _check_candidate(db, candidate)

    for _ in range(attempts):
        code = _roll(db)
        if code is not None:
            return code
    raise CodeUnavailable()


def shorten(db: Session, target: str, candidate: str | None = None, attempts: int = MAX_ATTEMPTS) -> models.Link:
    """Allocate a code for ``target`` and insert it.

    ``attempts`` bounds the generated codes in total, whether a roll is lost
    at the existence check or at the insert.
    """
    candidate = normalize_candidate(candidate)
    if candidate is not None:
        code = _check_candidate(db, candidate)
        try:
            return crud.create_link(db, code, target)
        except crud.DuplicateCode:
            raise CodeExists(code)

    for _ in range(attempts):
        code = _roll(db)
        if code is None:
            continue
        try:
            return crud.create_link(db, code, target)
        except crud.DuplicateCode:
            logger.warning("Lost insert race for generated code %s, retrying", code)
    raise CodeUnavailable()
