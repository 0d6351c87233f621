from typing import Any, Callable, Hashable, Iterable, TypeVar

T = TypeVar("T")


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def is_set(value: Any) -> bool:
    return value is not UNSET


def dedupe_by(items: Iterable[T], key: Callable[[T], Hashable | None]) -> list[T]:
    """Keep the first item per key, in input order; items whose key is None are dropped."""
    seen: set = set()
    out: list[T] = []
    for item in items:
        k = key(item)
        if k is None or k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out
