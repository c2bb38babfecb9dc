import logging
from typing import Any, Dict, List, Optional

from pinecone import Pinecone

from lib.error_handler import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

MAX_TOP_K = 20

class VectorService:
    def __init__(self, openai_client, api_key: str = '', index_name: str = '',
                 namespace: str = '', index=None):
        self.openai = openai_client
        self.namespace = namespace
        if index is not None:
            self.pinecone_index = index
            return

        try:
            logger.info(f"Initializing Pinecone for index: {index_name}")
            pc = Pinecone(api_key=api_key)
            self.pinecone_index = pc.Index(index_name)

            # Verify connection
            stats = self.pinecone_index.describe_index_stats()
            logger.info(f"Successfully connected to index. Stats: {stats}")
        except Exception as e:
            logger.error(f"Failed to initialize Pinecone index: {str(e)}")
            logger.error(f"Index Name: {index_name}")
            raise e

    async def query_content(
        self,
        query: str,
        namespace: Optional[str] = None,
        top_k: int = 5,
        filter_metadata: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Embed the query text and return the closest matches from the index"""
        if not query or not query.strip():
            raise ValidationError("Query is required")
        try:
            top_k = min(max(int(top_k), 1), MAX_TOP_K)
        except (TypeError, ValueError):
            raise ValidationError("top_k must be an integer")

        # 1. Convert query to embedding vector
        embedding = self.openai.embed(query)

        # 2. Search Pinecone for similar vectors
        params = {
            'vector': embedding,
            'top_k': top_k,
            'include_metadata': True,
            'namespace': namespace or self.namespace,
        }
        if filter_metadata:
            params['filter'] = filter_metadata
        try:
            results = self.pinecone_index.query(**params)
        except Exception as e:
            logger.error(f"Error searching vectors: {str(e)}")
            raise UpstreamError(f"Vector search failed: {str(e)}", user_message="Vector search failed")

        matches = []
        for match in results.matches:
            matches.append({
                'id': match.id,
                'score': match.score,
                'metadata': dict(match.metadata or {}),
            })
        logger.info(f"Vector query returned {len(matches)} matches")
        return matches
