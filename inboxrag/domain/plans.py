from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


# Ledger counter kinds and the usage_counters_daily column each one increments.
USAGE_COLUMNS: dict[str, str] = {
    "messages": "messages_count",
    "messages_inbound": "messages_inbound",
    "messages_outbound": "messages_outbound",
    "tokens_in": "tokens_in",
    "tokens_out": "tokens_out",
    "rag_queries": "rag_queries_count",
    "docs_indexed": "docs_indexed_count",
    "ai_requests": "ai_requests_count",
    "storage_bytes": "storage_bytes_added",
}

# Daily limit governing each kind; kinds missing here are never enforced.
KIND_LIMITS: dict[str, str] = {
    "messages": "max_daily_messages",
    "tokens_in": "max_tokens_in",
    "tokens_out": "max_tokens_out",
    "rag_queries": "max_daily_rag_queries",
    "docs_indexed": "max_daily_indexing",
}

# Stored plan JSON uses camelCase keys.
_JSON_KEYS: dict[str, str] = {
    "maxDocuments": "max_documents",
    "maxStorageMb": "max_storage_mb",
    "maxDocSizeMb": "max_doc_size_mb",
    "maxDailyIndexing": "max_daily_indexing",
    "maxDailyRagQueries": "max_daily_rag_queries",
    "maxDailyMessages": "max_daily_messages",
    "maxTokensIn": "max_tokens_in",
    "maxTokensOut": "max_tokens_out",
}


@dataclass(frozen=True)
class PlanLimits:
    # None means unlimited for every numeric limit.
    code: str
    max_documents: int | None = None
    max_storage_mb: int | None = None
    max_doc_size_mb: int | None = None
    max_daily_indexing: int | None = None
    max_daily_rag_queries: int | None = None
    max_daily_messages: int | None = None
    max_tokens_in: int | None = None
    max_tokens_out: int | None = None
    rag_enabled: bool = True

    def limit_for(self, kind: str) -> int | None:
        field_name = KIND_LIMITS.get(kind)
        if field_name is None:
            return None
        return getattr(self, field_name)

    @classmethod
    def from_json(cls, code: str, raw: dict[str, Any]) -> "PlanLimits":
        values: dict[str, Any] = {}
        for json_key, field_name in _JSON_KEYS.items():
            value = raw.get(json_key, raw.get(field_name))
            values[field_name] = _parse_limit(value)
        rag_enabled = raw.get("ragEnabled", raw.get("rag_enabled", True))
        return cls(code=code, rag_enabled=bool(rag_enabled), **values)

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        payload: dict[str, Any] = {json_key: data[field] for json_key, field in _JSON_KEYS.items()}
        payload["ragEnabled"] = self.rag_enabled
        return payload


def _parse_limit(value: Any) -> int | None:
    # Legacy plans stored -1 for unlimited; normalize every negative sentinel to None.
    if value is None:
        return None
    limit = int(value)
    if limit < 0:
        return None
    return limit


DEFAULT_PLANS: dict[str, PlanLimits] = {
    "starter": PlanLimits(
        code="starter",
        max_documents=10,
        max_storage_mb=50,
        max_doc_size_mb=5,
        max_daily_indexing=5,
        max_daily_rag_queries=100,
        max_daily_messages=500,
        max_tokens_in=100_000,
        max_tokens_out=50_000,
    ),
    "pro": PlanLimits(
        code="pro",
        max_documents=100,
        max_storage_mb=500,
        max_doc_size_mb=25,
        max_daily_indexing=50,
        max_daily_rag_queries=1000,
        max_daily_messages=5000,
        max_tokens_in=1_000_000,
        max_tokens_out=500_000,
    ),
    "business": PlanLimits(
        code="business",
        max_documents=500,
        max_storage_mb=2000,
        max_doc_size_mb=50,
        max_daily_indexing=200,
        max_daily_rag_queries=5000,
        max_daily_messages=25000,
        max_tokens_in=5_000_000,
        max_tokens_out=2_500_000,
    ),
    "enterprise": PlanLimits(code="enterprise", max_doc_size_mb=100),
}

PLAN_NAMES: dict[str, str] = {
    "starter": "Starter",
    "pro": "Pro",
    "business": "Business",
    "enterprise": "Enterprise",
}
