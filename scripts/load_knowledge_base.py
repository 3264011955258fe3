#!/usr/bin/env python3
"""CLI script to bulk-load an agent's knowledge base.

Usage:
    uv run python scripts/load_knowledge_base.py --agent-id biz_001 --file chunks.json
    uv run python scripts/load_knowledge_base.py --agent-id biz_001 --file faq.json --embed --replace

The file holds a JSON list of chunks. Each chunk is an object with
``content`` and ``embedding``; with --embed, ``embedding`` may be omitted
and is computed with the configured OpenAI embedding model.

Connects to Qdrant using KNOWLEDGE_* settings from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.knowledge
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def load(agent_id: str, path: str, embed: bool, replace: bool) -> None:
    """Read chunks from ``path`` and store them for ``agent_id``."""
    from src.knowledge import EmbeddingService, KBChunk, KnowledgeBaseConfig, QdrantKnowledgeStore

    with open(path, encoding="utf-8") as f:
        raw_chunks = json.load(f)
    if not isinstance(raw_chunks, list) or not raw_chunks:
        raise SystemExit(f"{path}: expected a non-empty JSON list of chunks")

    config = KnowledgeBaseConfig()
    store = QdrantKnowledgeStore(config)
    try:
        await store.initialize()

        if embed:
            missing = [i for i, c in enumerate(raw_chunks) if not c.get("embedding")]
            if missing:
                print(f"Embedding {len(missing)} chunk(s) with {config.embedding_model}")
                vectors = await EmbeddingService(config).embed_batch(
                    [raw_chunks[i]["content"] for i in missing]
                )
                for i, vector in zip(missing, vectors):
                    raw_chunks[i]["embedding"] = vector

        chunks = [
            KBChunk(tenant_id=agent_id, content=c["content"], embedding=c["embedding"])
            for c in raw_chunks
        ]

        if replace:
            loaded = await store.replace(agent_id, chunks)
            print(f"Replaced knowledge base for agent {agent_id} with {loaded} chunk(s)")
        else:
            loaded = await store.load(agent_id, chunks)
            print(f"Loaded {loaded} chunk(s) for agent {agent_id}")
        print(f"  Total chunks: {await store.count(agent_id)}")
    finally:
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Bulk-load an agent's knowledge base")
    parser.add_argument("--agent-id", required=True, help="Agent (tenant) id, e.g. biz_001")
    parser.add_argument("--file", required=True, help="Path to a JSON list of chunks")
    parser.add_argument("--embed", action="store_true", help="Compute missing embeddings")
    parser.add_argument("--replace", action="store_true", help="Replace existing chunks once the new ones are stored")
    args = parser.parse_args()

    asyncio.run(load(args.agent_id, args.file, args.embed, args.replace))


if __name__ == "__main__":
    main()
