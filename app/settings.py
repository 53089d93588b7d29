import os
from typing import List

from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseModel):
    """
    Global application configuration, loaded from environment variables (with sensible defaults).

    Attributes:
        gemini_api_keys (str): Comma-separated Gemini API keys, tried in order by the retry executor.
        gemini_model (str): Generative model used for answers and query rewriting.
        gemini_embed_model (str): Embedding model used for queries and ingested chunks.
        gemini_timeout (float): Max seconds to wait for any single Gemini call.
        retry_max_cycles (int): Extra passes over the whole key list before giving up.
        retry_cooldown_s (float): Pause before starting another pass over the key list.
        retry_backoff_s (float): Pause after a rate-limited (429) attempt.
        chroma_dir (str): Filesystem path for ChromaDB persistent storage.
        docs_dir (str): Filesystem path for document ingestion.
        match_threshold (float): Minimum similarity score for semantic matches.
        match_count (int): Number of semantic matches requested from the store.
        lexical_count (int): Number of keyword matches requested from the store.
        max_passages (int): Cap on passages handed to the composer after merging.
        telegram_bot_token (str): Bot token for the operator channel (empty disables escalation).
        telegram_admin_chat_id (str): Chat that receives escalated questions.
        fallback_index_url (str): General index shown when nothing was found.
    """
    gemini_api_keys: str = os.getenv("GEMINI_API_KEYS", "")
    gemini_base_url: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-lite")
    gemini_embed_model: str = os.getenv("GEMINI_EMBED_MODEL", "text-embedding-004")
    gemini_timeout: float = float(os.getenv("GEMINI_TIMEOUT", 60))
    temperature: float = float(os.getenv("TEMPERATURE", "0.3"))
    max_output_tokens: int = int(os.getenv("MAX_OUTPUT_TOKENS", 1024))

    retry_max_cycles: int = int(os.getenv("RETRY_MAX_CYCLES", 1))
    retry_cooldown_s: float = float(os.getenv("RETRY_COOLDOWN_S", "2.0"))
    retry_backoff_s: float = float(os.getenv("RETRY_BACKOFF_S", "1.0"))

    rewrite_query: bool = os.getenv("REWRITE_QUERY", "false").lower() == "true"
    safety_fallback: bool = os.getenv("SAFETY_FALLBACK", "true").lower() == "true"

    chroma_dir: str = os.getenv("CHROMA_DIR", "./data/chroma")
    collection_name: str = os.getenv("COLLECTION_NAME", "rag_docs")
    docs_dir: str = os.getenv("DOCS_DIR", "./data/docs")
    api_key: str = os.getenv("API_KEY", "")
    max_bytes: int = int(os.getenv("MAX_BYTES", 1048576))
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    match_threshold: float = float(os.getenv("MATCH_THRESHOLD", "0.20"))
    match_count: int = int(os.getenv("MATCH_COUNT", 8))
    lexical_count: int = int(os.getenv("LEXICAL_COUNT", 3))
    max_passages: int = int(os.getenv("MAX_PASSAGES", 8))
    chunk_size: int = int(os.getenv("CHUNK_SIZE", 600))
    chunk_overlap: int = int(os.getenv("CHUNK_OVERLAP", 120))

    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_admin_chat_id: str = os.getenv("TELEGRAM_ADMIN_CHAT_ID", "")
    telegram_webhook_secret: str = os.getenv("TELEGRAM_WEBHOOK_SECRET", "")
    telegram_api_base: str = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")
    telegram_timeout: float = float(os.getenv("TELEGRAM_TIMEOUT", 15))

    answer_header: str = os.getenv("ANSWER_HEADER", "**Assistant:**")
    fallback_index_url: str = os.getenv("FALLBACK_INDEX_URL", "https://example.org/index")

    def credential_values(self) -> List[str]:
        """Split GEMINI_API_KEYS on commas, trimming blanks."""
        return [k.strip() for k in self.gemini_api_keys.split(",") if k.strip()]

    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

settings = Settings()
