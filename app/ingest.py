import os
import re
import hashlib
import logging
from typing import List, Dict, Optional, Sequence

from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool

from .settings import settings
from .metrics import rag_ingested_chunks_total, rag_ingest_skipped_files_total

logger = logging.getLogger(__name__)

ALLOWED_EXT = {".txt", ".md"}
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5 MB max per file
BATCH_SIZE = 100

def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        return f.read()

def _inside(path: str, root: str) -> bool:
    """True if `path` (symlinks resolved) is `root` or below it."""
    real = os.path.realpath(path)
    return os.path.commonpath([real, root]) == root

def find_files(base_paths: List[str]) -> List[str]:
    """
    Recursively find allowed text files (.md, .txt) under the given paths.
    Paths outside docs_dir are skipped.

    Args:
        base_paths (List[str]): File or directory paths to search.
    Returns:
        List[str]: Absolute paths of discovered files (may be empty).
    """
    files = []
    base_docs_dir = os.path.realpath(settings.docs_dir)

    for base in base_paths:
        abs_base = os.path.abspath(base)

        if not _inside(abs_base, base_docs_dir):
            logger.warning("Skipping %s: outside docs_dir %s", base, base_docs_dir)
            rag_ingest_skipped_files_total.labels(reason="outside_docs_dir").inc()
            continue

        if os.path.isfile(abs_base):
            ext = os.path.splitext(abs_base)[1].lower()
            if ext in ALLOWED_EXT:
                files.append(abs_base)
            else:
                logger.warning("Skipping %s: invalid extension", abs_base)
                rag_ingest_skipped_files_total.labels(reason="invalid_ext").inc()
        else:
            for root, _, fs in os.walk(abs_base):
                for name in fs:
                    fp = os.path.abspath(os.path.join(root, name))
                    if not _inside(fp, base_docs_dir):
                        logger.warning("Skipping %s: resolves outside docs_dir", fp)
                        rag_ingest_skipped_files_total.labels(reason="outside_docs_dir").inc()
                    elif os.path.splitext(name)[1].lower() in ALLOWED_EXT:
                        files.append(fp)
                    else:
                        logger.warning("Skipping %s: invalid extension", fp)
                        rag_ingest_skipped_files_total.labels(reason="invalid_ext").inc()
    return files

def chunk_text(text: str, chunk_size: int, overlap: int) -> list[str]:
    """
    Split text into overlapping chunks, preferring paragraph then sentence boundaries.
    Returns non-empty, de-duplicated chunks.
    """
    if not text.strip():
        return []

    units: list[str] = []
    for para in re.split(r"\n\s*\n", text):
        if len(para) <= chunk_size:
            units.append(para.strip())
        else:
            units.extend(s.strip() for s in re.split(r'(?<=[.!?])\s+', para) if s.strip())

    # pack units into chunks of at most ~chunk_size
    packed: list[str] = []
    current = ""
    for unit in units:
        if not unit:
            continue
        if len(current) + len(unit) + 1 <= chunk_size:
            current = (current + " " + unit).strip()
        else:
            if current:
                packed.append(current)
            current = unit
    if current:
        packed.append(current)

    # bridge consecutive chunks with an overlap window
    windows: list[str] = []
    for i, chunk in enumerate(packed):
        windows.append(chunk)
        if overlap > 0 and i + 1 < len(packed):
            tail = chunk[-min(overlap, len(chunk)):]
            bridge = (tail + packed[i + 1][: chunk_size - len(tail)]).strip()
            if bridge:
                windows.append(bridge)

    final: list[str] = []
    seen = set()
    for ch in windows:
        ch = ch.strip()
        if ch and ch not in seen:
            seen.add(ch)
            final.append(ch)
    return final

def _load_file(fp: str) -> Optional[str]:
    try:
        file_size = os.path.getsize(fp)
    except OSError as e:
        logger.warning("Could not stat file %s: %s", fp, e)
        return None
    if file_size > MAX_FILE_SIZE:
        logger.warning("Skipping %s: file too large (%d bytes)", fp, file_size)
        rag_ingest_skipped_files_total.labels(reason="too_large").inc()
        return None
    try:
        return read_text(fp)
    except OSError as e:
        logger.warning("Could not read %s: %s", fp, e)
        return None

def collect_chunks(paths: Sequence[str], documents: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Chunk files and posted documents into {id, text, source} records.
    Chunk texts are de-duplicated across the whole run by SHA-256.
    """
    sources: List[tuple] = []
    for fp in find_files(list(paths)):
        text = _load_file(fp)
        if text is not None:
            sources.append((fp, text))
    for doc in documents:
        sources.append((doc["source"], doc["text"]))

    seen_hashes: set[str] = set()
    records: List[Dict[str, str]] = []
    duplicates = 0
    for source, text in sources:
        chunks = chunk_text(text, settings.chunk_size, settings.chunk_overlap)
        if not chunks:
            logger.info("%s: produced no valid chunks (empty or whitespace).", source)
            continue
        for idx, ch in enumerate(chunks):
            h = hashlib.sha256(ch.encode("utf-8")).hexdigest()
            if h in seen_hashes:
                duplicates += 1
                continue
            seen_hashes.add(h)
            records.append({"id": f"{source}:{idx}", "text": ch, "source": source})

    logger.info("Collected %d chunks from %d sources; skipped %d duplicates",
                len(records), len(sources), duplicates)
    return records

async def ingest(
    store,
    gemini,
    paths: Optional[Sequence[str]] = None,
    documents: Optional[Sequence[Dict[str, str]]] = None,
) -> int:
    """
    Chunk, embed (through the rotating Gemini client) and upsert into the store.
    Each source's previously stored chunks are deleted before its new ones are written.

    Raises:
        HTTPException(400): nothing ingestible was found.
    Returns:
        int: Number of chunks written.
    """
    documents = list(documents or [])
    if paths is None and not documents:
        paths = [settings.docs_dir]
    records = await run_in_threadpool(collect_chunks, list(paths or []), documents)
    if not records:
        raise HTTPException(status_code=400, detail="No valid .txt/.md files or documents found to ingest.")

    added = 0
    cleared: set[str] = set()
    for i in range(0, len(records), BATCH_SIZE):
        batch = records[i:i + BATCH_SIZE]
        vectors = await gemini.embed_many([r["text"] for r in batch])
        # a re-ingested source replaces all of its old chunks, not just matching ids
        for source in dict.fromkeys(r["source"] for r in batch):
            if source not in cleared:
                await run_in_threadpool(store.delete_source, source)
                cleared.add(source)
        await run_in_threadpool(store.upsert, batch, vectors)
        rag_ingested_chunks_total.inc(len(batch))
        added += len(batch)
        logger.info("Upserted batch of %d chunks", len(batch))

    logger.info("Ingest complete: %d chunks", added)
    return added
