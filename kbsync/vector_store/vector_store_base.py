from abc import ABC, abstractmethod
from typing import Optional


class IndexWriter(ABC):
    """
    The external index the sync engine writes to.

    ``create`` returns once the index acknowledged the artifact; it does not
    wait for ingestion. ``delete`` treats an artifact that is already gone as
    deleted.
    """

    @abstractmethod
    async def create(self, content: str, filename: str) -> str:
        """Upload content and return the new artifact id."""
        pass

    @abstractmethod
    async def delete(self, artifact_id: str) -> None:
        pass

    async def get_status(self, artifact_id: str) -> Optional[str]:
        """Ingestion status of an artifact, when the index reports one."""
        return None

    def is_transient(self, exc: BaseException) -> bool:
        """Whether a failed call is worth retrying."""
        return False

    def is_fatal(self, exc: BaseException) -> bool:
        """Whether a failure should abort the whole run (e.g. bad credentials)."""
        return False

    async def close(self) -> None:
        pass
