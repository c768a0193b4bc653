# usage_meter/demo/seed_demo_data.py

import random
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from usage_meter.core.pricing import calculate_cost
from usage_meter.core.token_counter import TokenUsage
from usage_meter.storage.db import DEFAULT_DB_PATH
from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import FeatureType, LatencyRecord, PriceCatalogEntry, UsageRecord
from usage_meter.storage.repository import (
    UsageRepository,
    initialize_schema,
    upsert_chatbot,
    upsert_model_price,
    upsert_tenant,
)

DEMO_PRICES = [
    PriceCatalogEntry("google", "gemini-2.5-flash-lite", "Gemini 2.5 Flash-Lite", 0.075, 0.30),
    PriceCatalogEntry("openai", "gpt-4o-mini", "GPT-4o Mini", 0.15, 0.60),
    PriceCatalogEntry("openai", "text-embedding-3-small", "Text Embedding 3 Small", 0.02, 0.02,
                      is_embedding=True),
]

DEMO_TENANTS = {
    "acme": ("Acme Corp", {"acme-support": "Support Bot", "acme-sales": "Sales Bot"}),
    "globex": ("Globex", {"globex-help": "Help Desk"}),
}

DEMO_DAYS = 14
CALLS_PER_DAY = 12
LATENCY_HOURS = 3
REQUESTS_PER_HOUR = 15


def seed_demo_data(
    db_path: str = DEFAULT_DB_PATH,
    clock: Callable[[], datetime] = datetime.now,
    seed: Optional[int] = 42
) -> Dict[str, int]:
    """Populate a database with prices, tenants, usage and latency samples.

    Usage covers the last two weeks; latency covers the last few hours so
    the realtime dashboards have something to show.

    Returns:
        Counts of inserted usage and latency records
    """
    rng = random.Random(seed)
    now = clock()

    initialize_schema(db_path)
    for entry in DEMO_PRICES:
        upsert_model_price(entry, now, db_path)
    for tenant_id, (tenant_name, chatbots) in DEMO_TENANTS.items():
        upsert_tenant(tenant_id, tenant_name, db_path)
        for chatbot_id, chatbot_name in chatbots.items():
            upsert_chatbot(chatbot_id, tenant_id, chatbot_name, db_path)

    chat_price, _, embedding_price = DEMO_PRICES
    usage_repo = UsageRepository(db_path)
    usage_count = 0
    for day in range(DEMO_DAYS, 0, -1):
        for tenant_id, (_, chatbots) in DEMO_TENANTS.items():
            for _ in range(CALLS_PER_DAY):
                chatbot_id = rng.choice(list(chatbots))
                timestamp = now - timedelta(days=day, minutes=rng.randint(0, 1439))
                if rng.random() < 0.25:
                    price = embedding_price
                    feature = FeatureType.EMBEDDING
                    usage = TokenUsage(input_tokens=rng.randint(200, 2000))
                else:
                    price = chat_price
                    feature = FeatureType.CHAT
                    usage = TokenUsage(
                        input_tokens=rng.randint(500, 4000),
                        output_tokens=rng.randint(100, 800),
                    )
                usage_repo.insert_usage_record(UsageRecord(
                    timestamp=timestamp,
                    tenant_id=tenant_id,
                    chatbot_id=chatbot_id,
                    model_provider=price.provider,
                    model_id=price.model_id,
                    feature_type=feature,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                    cost=calculate_cost(usage, price),
                ))
                usage_count += 1

    latency_records = []
    for tenant_id, (_, chatbots) in DEMO_TENANTS.items():
        for chatbot_id in chatbots:
            for _ in range(LATENCY_HOURS * REQUESTS_PER_HOUR):
                cache_hit = rng.random() < 0.2
                timestamp = now - timedelta(minutes=rng.uniform(0, LATENCY_HOURS * 60))
                if cache_hit:
                    latency_records.append(LatencyRecord(
                        timestamp=timestamp,
                        tenant_id=tenant_id,
                        chatbot_id=chatbot_id,
                        channel="web",
                        total_duration_ms=rng.uniform(20, 80),
                        cache_hit=True,
                    ))
                    continue
                llm_ms = rng.uniform(600, 2500)
                search_ms = rng.uniform(50, 300)
                rewrite_ms = rng.uniform(0, 400)
                latency_records.append(LatencyRecord(
                    timestamp=timestamp,
                    tenant_id=tenant_id,
                    chatbot_id=chatbot_id,
                    channel="web",
                    total_duration_ms=llm_ms + search_ms + rewrite_ms + rng.uniform(10, 120),
                    llm_duration_ms=llm_ms,
                    search_duration_ms=search_ms,
                    rewrite_duration_ms=rewrite_ms,
                    chunks_used=rng.randint(1, 8),
                ))
    LatencyRepository(db_path).insert_latency_records(latency_records)

    return {"usage_records": usage_count, "latency_records": len(latency_records)}


if __name__ == "__main__":
    counts = seed_demo_data()
    print(f"Demo data inserted: {counts['usage_records']} usage records, "
          f"{counts['latency_records']} latency records")
