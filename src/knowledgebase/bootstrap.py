"""Wire collaborators from ``AppSettings`` for the worker and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine

from knowledgebase.catalog import CatalogJobService, CatalogRepository, ItemExtractor
from knowledgebase.core.config import AppSettings
from knowledgebase.core.db import create_engine_from_settings, session_factory
from knowledgebase.extraction import (
    BrowserlessRenderer,
    DocumentExtractor,
    OpenAIDocumentUnderstanding,
    TieredExtractor,
)
from knowledgebase.fetch import GuardedFetcher, ObjectStorageReader, UrlGuard
from knowledgebase.ingestion.pipeline import KnowledgeIngestionPipeline, ProgressPublisher
from knowledgebase.ingestion.redis import NullProgressPublisher
from knowledgebase.ingestion.repository import KnowledgeRepository
from knowledgebase.ingestion.store_writer import ChunkStoreWriter
from knowledgebase.rag import (
    AnswerService,
    EmbeddingService,
    EmbeddingSettings,
    GenerationService,
    GenerationSettings,
    RetrievalEngine,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: AppSettings
    engine: Engine
    http_client: httpx.AsyncClient
    fetcher: GuardedFetcher
    extractor: DocumentExtractor
    embeddings: EmbeddingService
    generation: GenerationService
    knowledge: KnowledgeRepository
    pipeline: KnowledgeIngestionPipeline
    catalog: CatalogJobService
    retrieval: RetrievalEngine
    answers: AnswerService

    async def close(self) -> None:
        await self.http_client.aclose()
        self.engine.dispose()


def build_services(
    settings: AppSettings,
    *,
    engine: Engine | None = None,
    http_client: httpx.AsyncClient | None = None,
    progress_publisher: ProgressPublisher | None = None,
) -> Services:
    engine = engine or create_engine_from_settings(settings)
    sessions = session_factory(engine)
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.fetch.timeout_seconds)
    )

    fetcher = GuardedFetcher(
        client=http_client,
        settings=settings.fetch,
        guard=UrlGuard(dns_timeout=settings.fetch.dns_timeout_seconds),
    )
    renderer = None
    if settings.headless.enabled:
        renderer = BrowserlessRenderer(client=http_client, settings=settings.headless)
    else:
        logger.info("headless rendering disabled; no renderer endpoint configured")

    storage = ObjectStorageReader(settings=settings.storage)
    extractor = DocumentExtractor(
        fetcher=fetcher,
        tiered=TieredExtractor(
            renderer=renderer,
            max_text_chars=settings.fetch.max_text_chars,
            max_links=settings.fetch.max_follow_links,
        ),
        storage=storage,
        understanding=OpenAIDocumentUnderstanding(settings.openai),
        fetch_settings=settings.fetch,
        limits=settings.limits,
    )

    embeddings = EmbeddingService(EmbeddingSettings.from_settings(settings.llm, settings.openai))
    generation = GenerationService(
        GenerationSettings.from_settings(settings.llm, settings.openai, settings.openrouter)
    )

    knowledge = KnowledgeRepository(sessions, limits=settings.limits)
    catalog = CatalogJobService(
        repository=CatalogRepository(sessions),
        extractor=extractor,
        items=ItemExtractor(
            generator=generation, max_prompt_chars=settings.catalog.max_prompt_chars
        ),
        settings=settings.catalog,
        storage_path_from_url=storage.path_from_url,
    )
    pipeline = KnowledgeIngestionPipeline(
        repository=knowledge,
        extractor=extractor,
        writer=ChunkStoreWriter(
            store=knowledge, embedder=embeddings, max_chunks=settings.limits.max_chunks
        ),
        progress_publisher=progress_publisher or NullProgressPublisher(),
        catalog=catalog,
    )
    retrieval = RetrievalEngine(embedder=embeddings, index=knowledge, settings=settings.retrieval)

    return Services(
        settings=settings,
        engine=engine,
        http_client=http_client,
        fetcher=fetcher,
        extractor=extractor,
        embeddings=embeddings,
        generation=generation,
        knowledge=knowledge,
        pipeline=pipeline,
        catalog=catalog,
        retrieval=retrieval,
        answers=AnswerService(retrieval=retrieval, generator=generation),
    )
