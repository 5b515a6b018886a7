# app/indexer.py
import re
import threading
import hashlib
import logging
from typing import Dict, Iterator, List, Tuple

import chromadb
from chromadb.config import Settings
from sentence_transformers import SentenceTransformer
from langchain_text_splitters import RecursiveCharacterTextSplitter

import config
from ingest import get_repo_path, load_documents, normalize_repo_url

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 64

_client = None
_model = None
_locks = {}
_locks_guard = threading.Lock()


# ------------------------
# Lazily created singletons
# ------------------------
def get_client():
    """Return the process-wide Chroma PersistentClient, creating it if necessary."""
    global _client
    if _client is None:
        logger.debug("Using CHROMA_DIR: %s", config.CHROMA_DIR)
        _client = chromadb.PersistentClient(
            path=config.CHROMA_DIR, settings=Settings(anonymized_telemetry=False)
        )
    return _client


def get_model():
    global _model
    if _model is None:
        logger.info("Loading embedding model %s", config.EMBEDDING_MODEL)
        _model = SentenceTransformer(config.EMBEDDING_MODEL)
    return _model


def embed_texts(texts: List[str]) -> List[List[float]]:
    return get_model().encode(texts).tolist()


# ------------------------
# Helpers
# ------------------------
def collection_name(repo_url: str) -> str:
    """
    Chroma-legal collection name for a repository URL: 3-63 chars of
    [a-zA-Z0-9._-], alphanumeric at both ends.
    """
    url = normalize_repo_url(repo_url)
    tail = url.split("/")[-1]
    tail = re.sub(r"[^A-Za-z0-9_-]", "_", tail).strip("_-")[:40]
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    return f"{tail}-{digest}" if tail else f"repo-{digest}"


def make_chunk_id(repo_url: str, file_path: str, index: int, chunk_text_: str) -> str:
    raw = f"{repo_url}|{file_path}|{index}|{chunk_text_}".encode("utf-8")
    return hashlib.sha1(raw).hexdigest()


def get_splitter() -> RecursiveCharacterTextSplitter:
    return RecursiveCharacterTextSplitter(
        chunk_size=config.CHUNK_SIZE,
        chunk_overlap=config.CHUNK_OVERLAP,
    )


def split_documents(docs: Dict[str, str]) -> List[Tuple[str, int, str]]:
    """Split ``{path: text}`` into ``(path, chunk_index, chunk)`` triples."""
    splitter = get_splitter()
    chunks = []
    for path, text in docs.items():
        for i, chunk in enumerate(splitter.split_text(text)):
            chunks.append((path, i, chunk))
    return chunks


def _batched(seq: list, n: int) -> Iterator[list]:
    for i in range(0, len(seq), n):
        yield seq[i : i + n]


def get_collection(repo_url: str):
    return get_client().get_or_create_collection(
        name=collection_name(repo_url), configuration={"hnsw": {"space": "cosine"}}
    )


def _repo_lock(repo_url: str):
    with _locks_guard:
        return _locks.setdefault(collection_name(repo_url), threading.RLock())


def _is_complete(col) -> bool:
    return bool((col.metadata or {}).get("indexed"))


# ------------------------
# Indexing
# ------------------------
def is_indexed(repo_url: str) -> bool:
    """True only once every chunk of the repository has been stored."""
    return _is_complete(get_collection(repo_url))


def index_repo(repo_url: str, force: bool = False) -> int:
    """
    Clone (or pull) ``repo_url``, chunk its files and upsert the embeddings.

    A completed index is left alone unless ``force`` is set. The collection is
    marked complete only after the last batch; a failure part way drops what
    was written so the next call starts over. Returns the number of chunks
    stored for the repository.
    """
    url = normalize_repo_url(repo_url)
    with _repo_lock(repo_url):
        col = get_collection(repo_url)
        if _is_complete(col) and not force:
            existing = col.count()
            logger.info("Repository %s already indexed (%d chunks)", repo_url, existing)
            return existing
        if col.count():
            # leftovers of a forced rebuild or of an interrupted run
            reset_collection(repo_url)
            col = get_collection(repo_url)

        repo_path = get_repo_path(repo_url)
        docs = load_documents(repo_path)
        if not docs:
            raise ValueError("No indexable files found in repository")

        chunks = split_documents(docs)
        logger.info("Indexing %s: %d files, %d chunks", repo_url, len(docs), len(chunks))

        try:
            for batch in _batched(chunks, EMBED_BATCH_SIZE):
                texts = [chunk for _, _, chunk in batch]
                col.upsert(
                    ids=[make_chunk_id(url, path, i, chunk) for path, i, chunk in batch],
                    documents=texts,
                    metadatas=[{"repo": url, "path": path, "chunk_index": i} for path, i, _ in batch],
                    embeddings=embed_texts(texts),
                )
            total = col.count()
            col.modify(metadata={"repo": url, "indexed": True, "chunks": total})
        except Exception:
            logger.error("Indexing %s failed, dropping partial collection", repo_url)
            reset_collection(repo_url)
            raise

    logger.info("Repository indexed successfully (%d chunks)", total)
    return total


def reset_collection(repo_url: str) -> bool:
    """Drop the repository's collection; False when there was nothing to drop."""
    name = collection_name(repo_url)
    with _repo_lock(repo_url):
        try:
            get_client().delete_collection(name=name)
        except Exception as e:
            # chroma raises different types for a missing collection across versions
            logger.warning("delete_collection %s failed (may be fine if not exists): %s", name, e)
            return False
    logger.info("Deleted collection: %s", name)
    return True


# ------------------------
# Retrieval
# ------------------------
def retrieve_docs(repo_url: str, query: str, top_k: int = None) -> List[dict]:
    top_k = top_k or config.TOP_K
    col = get_collection(repo_url)
    count = col.count()
    if not count or not _is_complete(col):
        raise ValueError("Repository not indexed yet")

    results = col.query(
        query_embeddings=embed_texts([query]),
        n_results=min(top_k, count),
        include=["documents", "metadatas", "distances"],
    )

    if not results.get("documents") or not results["documents"][0]:
        logger.debug("No documents returned for query")
        return []

    distances = (results.get("distances") or [[None] * len(results["documents"][0])])[0]
    return [
        {"text": doc, "metadata": meta, "distance": dist}
        for doc, meta, dist in zip(results["documents"][0], results["metadatas"][0], distances)
    ]
