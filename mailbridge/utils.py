import hashlib
import random
import string
from collections.abc import Callable, Hashable, Iterable, Sequence
from datetime import datetime
from typing import TypeVar


T = TypeVar("T")

NAME_PLACEHOLDER = "{{name}}"
NAME_FALLBACK = "there"
NO_NAME_SENTINELS = ("No name",)
NO_EMAIL_SENTINELS = ("Loading...", "No email")


class PreconditionError(ValueError):
    pass


def normalize_error_message(error: Exception | str | object) -> str:
    if isinstance(error, Exception):
        text = str(error)
        return text or type(error).__name__
    return str(error)


def partition(items: Sequence[T], batch_size: int) -> list[list[T]]:
    if batch_size <= 0:
        raise PreconditionError(f"batch_size must be positive, got {batch_size}")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def dedupe_by(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    seen = set()
    result: list[T] = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        result.append(item)
    return result


def resolve_display_name(
    name: str | None,
    username: str | None,
    email: str | None,
) -> str:
    if name and name not in NO_NAME_SENTINELS:
        return name
    if username:
        return username
    if email and email not in NO_EMAIL_SENTINELS:
        return email.split("@")[0]
    return NAME_FALLBACK


def personalize(template: str, display_name: str) -> str:
    return template.replace(NAME_PLACEHOLDER, display_name)


def hash_credential(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def new_job_id(prefix: str = "broadcast") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(utcnow().timestamp() * 1000)}_{suffix}"


def truncate_errors(errors: list[str], limit: int) -> list[str]:
    if len(errors) <= limit:
        return list(errors)
    return errors[:limit] + [f"... and {len(errors) - limit} more errors"]


def utcnow() -> datetime:
    return datetime.utcnow()


def minute_window_start(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)
