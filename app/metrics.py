# app/metrics.py
from prometheus_client import Counter, Histogram

# Ingestion metrics
rag_ingested_chunks_total = Counter(
    "rag_ingested_chunks_total",
    "Total number of document chunks successfully ingested"
)

rag_ingest_skipped_files_total = Counter(
    "rag_ingest_skipped_files_total",
    "Number of files skipped during ingestion",
    ["reason"]  # label: e.g. "too_large", "invalid_ext", "outside_docs_dir"
)

# Retrieval metrics
rag_retrieval_passages = Histogram(
    "rag_retrieval_passages",
    "Number of merged passages retrieved per query",
    buckets=[0, 1, 2, 4, 8, 16]
)

rag_retrieval_strategy_failures_total = Counter(
    "rag_retrieval_strategy_failures_total",
    "Retrieval strategies that raised and were skipped",
    ["strategy"]
)

# Provider (Gemini) metrics
rag_provider_attempts_total = Counter(
    "rag_provider_attempts_total",
    "Provider call attempts by outcome",
    ["provider", "outcome"]  # ok | rate_limited | retryable | error
)
rag_provider_exhausted_total = Counter(
    "rag_provider_exhausted_total",
    "Calls that ran out of credentials",
    ["provider"]
)
rag_llm_latency_seconds = Histogram(
    "rag_llm_latency_seconds", "Generation latency including retries (s)", ["status", "model"],
    buckets=(0.05, 0.1, 0.2, 0.5, 1, 2, 5, 10, 30, 60)
)

# Pipeline / escalation metrics
rag_chat_outcomes_total = Counter(
    "rag_chat_outcomes_total",
    "Chat requests by outcome",
    ["outcome"]  # answered | no_context | escalated | busy | error
)
rag_escalations_total = Counter(
    "rag_escalations_total",
    "Questions forwarded to the operator channel",
    ["status"]  # sent | failed | disabled
)
rag_human_replies_total = Counter(
    "rag_human_replies_total",
    "Operator replies received from the channel",
    ["delivered"]
)
