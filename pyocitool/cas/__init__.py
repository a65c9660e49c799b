"""Content-addressable storage

Blobs are stored and retrieved by their digest.
"""
import io
import json
from abc import ABC, abstractmethod
from typing import BinaryIO

from pydantic import BaseModel

from pyocitool.descriptor import Descriptor
from pyocitool.errors import OCIError


class Engine(ABC):
    """A content-addressable storage engine"""

    closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _check_open(self):
        if self.closed:
            raise OCIError(f"{self.__class__.__name__} is closed")

    @abstractmethod
    def put(self, reader: BinaryIO) -> str:
        """Add a new blob to the store and return its digest

        The action is idempotent; a returned digest means "that content is
        stored at DIGEST" without implying "because of this put".
        """

    @abstractmethod
    def get(self, digest: str) -> BinaryIO:
        """Return a reader for the blob, raises NotFoundError if absent"""

    @abstractmethod
    def delete(self, digest: str):
        """Remove a blob from the store, raises NotFoundError if absent"""

    @abstractmethod
    def close(self):
        """Release resources held by the engine"""


def put_json(engine: Engine, data: BaseModel | dict, media_type: str) -> Descriptor:
    """Write a JSON document to the store and return a Descriptor referencing it"""
    if isinstance(data, BaseModel):
        raw = data.model_dump_json(exclude_none=True, by_alias=True)
        raw = raw.encode("utf-8")
    else:
        raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    digest = engine.put(io.BytesIO(raw))
    return Descriptor(mediaType=media_type, digest=digest, size=len(raw))
