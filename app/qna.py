# app/qna.py
import logging
from typing import List

import config
from indexer import index_repo, is_indexed, retrieve_docs

logger = logging.getLogger(__name__)


def validate_query(query: str) -> str:
    query = (query or "").strip()
    if not query:
        raise ValueError("Query must not be empty")
    if len(query.split()) > config.MAX_QUERY_WORDS:
        raise ValueError(f"Query must not exceed {config.MAX_QUERY_WORDS} words")
    return query


def format_context(chunks: List[dict]) -> str:
    return "\n\n".join(
        f"File: {c['metadata'].get('path', 'unknown')}\n{c['text']}" for c in chunks
    )


def prepare_qna_inputs(query: str, repo_url: str, top_k: int = None):
    """
    Fetch relevant context for answering queries.

    The repository is indexed on first use; later calls reuse the stored
    collection.
    """
    query = validate_query(query)
    if not repo_url:
        raise ValueError("Repository link is required")

    if not is_indexed(repo_url):
        index_repo(repo_url)

    chunks = retrieve_docs(repo_url, query, top_k=top_k)
    logger.debug("Retrieved %d chunks for query", len(chunks))

    return {
        "query": query,
        "context": chunks,
    }
