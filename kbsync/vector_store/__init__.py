"""
Index writers: the external vector store that receives synced documents.
"""

from .vector_store_base import IndexWriter
from .vector_store_openai import OpenAIVectorStoreWriter

__all__ = ['IndexWriter', 'OpenAIVectorStoreWriter']
