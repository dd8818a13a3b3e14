"""
Environment-driven wiring.

Builds the chat model, embeddings and stores a ``MemoryMiddleware`` needs
from the same environment variables an agent process already has:

- API key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
- Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
- MODEL_PROVIDER selects the init_chat_model provider
- DATABASE_URL switches the memory store to PostgreSQL + pgvector
"""

import logging
import os
from typing import Optional

from langchain.chat_models import init_chat_model

from .config import MemoryConfig
from .history import InMemoryChatHistoryStore
from .middleware import MemoryMiddleware
from .stores import InMemoryMemoryStore, PgVectorMemoryStore, connect_pg

logger = logging.getLogger(__name__)


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """Return (api_key, base_url), generic variables first."""
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def create_chat_model(config: MemoryConfig, temperature: float = 0.3, max_tokens: int = 2000):
    """Low-temperature chat model for summaries, merges and extraction. None on failure."""
    if not config.model_name:
        return None
    try:
        api_key, base_url = get_credentials()
        init_kwargs = {"temperature": temperature, "max_tokens": max_tokens}
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url

        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        return init_chat_model(config.model_name, **provider_kwargs, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create memory chat model: %s", e)
        return None


def create_embeddings(config: MemoryConfig):
    """
    OpenAI-compatible embeddings, or None when the provider has none.

    Without embeddings the stores fall back to keyword search and only the
    session-end transition can persist memories.
    """
    api_key, base_url = get_credentials()
    model_provider = os.getenv("MODEL_PROVIDER")

    # Embedding credentials: dedicated settings > general credentials
    embed_base_url = config.embedding_base_url or base_url
    embed_api_key = config.embedding_api_key or api_key

    if not (model_provider == "openai" or (embed_base_url and not model_provider)):
        logger.info(
            "No embedding model configured for provider '%s', memory recall will use keyword search",
            model_provider,
        )
        return None

    try:
        from langchain_openai import OpenAIEmbeddings

        embed_kwargs = {}
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        return OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None


def create_memory_store(embeddings=None):
    """PgVectorMemoryStore when DATABASE_URL is set, otherwise the in-process store."""
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        try:
            return PgVectorMemoryStore(connect_pg(db_url), embeddings)
        except Exception as e:
            logger.warning("Failed to connect to PostgreSQL (%s), using in-memory store", e)
    return InMemoryMemoryStore(embeddings)


def create_memory_middleware(
    config: Optional[MemoryConfig] = None,
    system_prompt: str = "",
    session_id: Optional[str] = None,
) -> MemoryMiddleware:
    """
    Build a fully wired ``MemoryMiddleware`` from the environment.

    Usage:
        memory = create_memory_middleware(system_prompt=SYSTEM_PROMPT)
        agent = create_agent(model, tools, middleware=[MemoryAgentMiddleware(memory, scope)])
    """
    config = config or MemoryConfig.from_env()
    llm = create_chat_model(config)
    embeddings = create_embeddings(config)
    return MemoryMiddleware.build(
        config,
        llm=llm,
        embeddings=embeddings,
        store=create_memory_store(embeddings),
        history=InMemoryChatHistoryStore(),
        system_prompt=system_prompt,
        session_id=session_id,
    )
