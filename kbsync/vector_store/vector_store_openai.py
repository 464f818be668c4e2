import openai
from openai import AsyncOpenAI
from typing import Optional

from .vector_store_base import IndexWriter
from ..config import get_logger
from ..sync.resilience import is_rate_limit_error

logger = get_logger(__name__)


class OpenAIVectorStoreWriter(IndexWriter):
    """
    Writes documents as files attached to an OpenAI vector store.
    """

    def __init__(self, openai_client: AsyncOpenAI, vector_store_id: str):
        self.openai_client = openai_client
        self.vector_store_id = vector_store_id

    async def create(self, content: str, filename: str) -> str:
        file = await self.openai_client.files.create(
            file=(filename, content.encode('utf-8'), 'text/plain'),
            purpose='assistants',
        )
        logger.debug(f"Created file {file.id} ({filename})")
        await self.openai_client.vector_stores.files.create(
            vector_store_id=self.vector_store_id,
            file_id=file.id,
        )
        logger.info(f"Added {filename} to vector store as {file.id}")
        return file.id

    async def delete(self, artifact_id: str) -> None:
        try:
            await self.openai_client.vector_stores.files.delete(
                artifact_id, vector_store_id=self.vector_store_id
            )
        except openai.NotFoundError:
            logger.debug(f"File {artifact_id} was not attached to the vector store")
        try:
            await self.openai_client.files.delete(artifact_id)
        except openai.NotFoundError:
            logger.info(f"File {artifact_id} already deleted")
            return
        logger.info(f"Deleted file {artifact_id}")

    async def get_status(self, artifact_id: str) -> Optional[str]:
        try:
            vs_file = await self.openai_client.vector_stores.files.retrieve(
                artifact_id, vector_store_id=self.vector_store_id
            )
        except openai.NotFoundError:
            return None
        return vs_file.status

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
            return True
        return is_rate_limit_error(exc)

    def is_fatal(self, exc: BaseException) -> bool:
        return isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError))

    async def close(self) -> None:
        await self.openai_client.close()
