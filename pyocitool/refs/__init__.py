"""Name-based reference storage

A reference maps a human readable name to the Descriptor of a manifest.
"""
from abc import ABC, abstractmethod
from typing import Callable, Iterable

from pyocitool.context import Context, check
from pyocitool.descriptor import Descriptor
from pyocitool.errors import InvalidReferenceError, OCIError

ListNameCallback = Callable[[str], None]


def validate_name(name: str):
    """References are stored as a single file under refs/"""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise InvalidReferenceError(f"invalid reference name: {name!r}")


def paginate(
    names: Iterable[str],
    prefix: str,
    size: int,
    from_: int,
    callback: ListNameCallback,
    ctx: Context | None = None,
):
    """Call callback for a page of the sorted names starting with prefix

    `from_` skips that many matches, `size` limits the page length,
    -1 meaning "all results".
    """
    if size == 0:
        return
    matched = 0
    for name in sorted(names):
        check(ctx)
        if not name.startswith(prefix):
            continue
        matched += 1
        if matched <= from_:
            continue
        callback(name)
        if matched - from_ == size:
            return


class Engine(ABC):
    """A name-based reference storage engine"""

    closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _check_open(self):
        if self.closed:
            raise OCIError(f"{self.__class__.__name__} is closed")

    @abstractmethod
    def put(self, name: str, descriptor: Descriptor):
        """Add a reference to the store, replacing any previous one"""

    @abstractmethod
    def get(self, name: str) -> Descriptor:
        """Return a reference, raises NotFoundError if absent"""

    @abstractmethod
    def list(self, prefix: str, size: int, from_: int, callback: ListNameCallback):
        """Call callback for the available names, sorted alphabetically

        For a store with names 123, abcd, abce, abcf and abcg:

        * list("", -1, 0, cb) -> 123, abcd, abce, abcf, abcg
        * list("", 2, 0, cb) -> 123, abcd
        * list("", 2, 1, cb) -> abcd, abce
        * list("abc", 2, 1, cb) -> abce, abcf

        Exceptions raised by callback abort the listing and propagate.
        """

    @abstractmethod
    def delete(self, name: str):
        """Remove a reference, raises NotFoundError if absent"""

    @abstractmethod
    def close(self):
        """Release resources held by the engine"""
