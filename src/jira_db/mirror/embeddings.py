"""Issue embeddings for semantic search over the mirror."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any

import numpy as np
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jira_db.exceptions import ExternalServiceError, NotFoundError
from jira_db.mirror.config import EmbeddingProvider, MirrorConfig
from jira_db.mirror.repositories import (
    SqliteEmbeddingRepository,
    SqliteIssueRepository,
    SqliteProjectRepository,
)
from jira_db.mirror.schemas import Issue
from jira_db.utils.batching import chunked

logger = logging.getLogger(__name__)

# Descriptions are cut to keep requests well under the model's token limit
MAX_DESCRIPTION_CHARS = 4000


def issue_text(issue: Issue) -> str:
    """Text embedded for an issue: key, summary, description and facets."""
    parts = [f"Key: {issue.key}", f"Summary: {issue.summary}"]
    if issue.description:
        parts.append(f"Description: {issue.description[:MAX_DESCRIPTION_CHARS]}")
    if issue.status:
        parts.append(f"Status: {issue.status}")
    if issue.issue_type:
        parts.append(f"Type: {issue.issue_type}")
    if issue.labels:
        parts.append(f"Labels: {', '.join(issue.labels)}")
    if issue.components:
        parts.append(f"Components: {', '.join(issue.components)}")
    return "\n".join(parts)


def content_hash(text: str) -> str:
    return hashlib.md5(text.encode()).hexdigest()


class EmbeddingPipeline:
    """Batches texts to the embedding API with retries and a concurrency cap."""

    def __init__(
        self,
        config: MirrorConfig | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the embedding pipeline.

        Args:
            config: Mirror configuration. Uses defaults from env if not provided.
            client: Optional preconfigured OpenAI client
        """
        self.config = config or MirrorConfig.from_env()
        self._client = client
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    @property
    def semaphore(self) -> asyncio.Semaphore:
        """Get or create rate limiting semaphore."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent_embeddings)
        return self._semaphore

    @property
    def model(self) -> str:
        return self.config.embedding_model

    async def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in input order.

        Raises:
            ExternalServiceError: If the provider fails after retries
        """
        if not texts:
            return []
        if self.config.embedding_provider != EmbeddingProvider.OPENAI:
            raise ExternalServiceError(
                f"Unsupported embedding provider: {self.config.embedding_provider}"
            )
        results: list[list[float]] = []
        for batch in chunked(texts, self.config.embedding_batch_size):
            try:
                results.extend(await self._embed_openai(batch))
            except OpenAIError as e:
                raise ExternalServiceError(f"Embedding request failed: {e}") from e
        return results

    @retry(
        retry=retry_if_exception_type((RateLimitError, APITimeoutError, APIConnectionError)),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=60),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Embedding API retry {retry_state.attempt_number}/5 "
            f"after {retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
        ),
    )
    async def _embed_openai(self, texts: list[str]) -> list[list[float]]:
        async with self.semaphore:
            response = await self.client.embeddings.create(
                model=self.config.embedding_model,
                input=texts,
            )
        # Sort by index to maintain order
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]


@dataclass
class EmbeddingGenerationResult:
    total_issues: int = 0
    embeddings_generated: int = 0
    embeddings_skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class IssueEmbedder:
    """Generate, store and search issue embeddings."""

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        projects: SqliteProjectRepository,
        issues: SqliteIssueRepository,
        embeddings: SqliteEmbeddingRepository,
    ) -> None:
        self.pipeline = pipeline
        self.projects = projects
        self.issues = issues
        self.embeddings = embeddings

    def _project_id(self, project_key: str | None) -> str | None:
        if project_key is None:
            return None
        project = self.projects.find_by_key(project_key)
        if project is None:
            raise NotFoundError(f"Project {project_key} is not in the local database")
        return project.id

    def _issues(self, project_id: str | None) -> list[Issue]:
        if project_id:
            return self.issues.find_by_project(project_id)
        issues: list[Issue] = []
        for project in self.projects.find_all():
            issues.extend(self.issues.find_by_project(project.id))
        return issues

    async def generate(
        self, project_key: str | None = None, force: bool = False
    ) -> EmbeddingGenerationResult:
        """Embed issues whose text or model changed since the last run.

        A failed batch is counted in ``errors`` and the run continues.
        """
        start = time.monotonic()
        project_id = self._project_id(project_key)
        issues = self._issues(project_id)
        result = EmbeddingGenerationResult(total_issues=len(issues))
        stored = {} if force else self.embeddings.find_hashes(project_id)
        model = self.pipeline.model

        pending: list[tuple[Issue, str, str]] = []
        for issue in issues:
            text = issue_text(issue)
            digest = content_hash(text)
            if stored.get(issue.id) == (digest, model):
                result.embeddings_skipped += 1
            else:
                pending.append((issue, text, digest))
        logger.info(
            f"{len(pending)} issues need embeddings, {result.embeddings_skipped} unchanged"
        )

        for batch in chunked(pending, self.pipeline.config.embedding_batch_size):
            try:
                vectors = await self.pipeline.embed_batch([text for _, text, _ in batch])
            except ExternalServiceError as e:
                logger.warning(f"Embedding batch of {len(batch)} failed: {e}")
                result.errors += len(batch)
                continue
            result.embeddings_generated += self.embeddings.upsert(
                [
                    (issue.id, issue.key, issue.project_id, digest, model, vector)
                    for (issue, _, digest), vector in zip(batch, vectors)
                ]
            )

        result.duration_seconds = time.monotonic() - start
        logger.info(
            f"Embedding generation complete: {result.embeddings_generated} generated, "
            f"{result.embeddings_skipped} skipped, {result.errors} errors "
            f"in {result.duration_seconds:.1f}s"
        )
        return result

    async def semantic_search(
        self,
        query: str,
        project_key: str | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Rank stored issues by cosine similarity to ``query``."""
        project_id = self._project_id(project_key)
        stored = self.embeddings.find_vectors(project_id, model=self.pipeline.model)
        if not stored:
            return []

        query_vector = np.asarray(await self.pipeline.embed(query), dtype=np.float32)
        matrix = np.asarray([vector for _, vector in stored], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vector)
        scores = (matrix @ query_vector) / np.where(norms == 0, 1.0, norms)
        top = np.argsort(-scores)[:limit]

        results = []
        for index in top:
            key = stored[int(index)][0]
            issue = self.issues.find_by_key(key)
            results.append(
                {
                    "key": key,
                    "summary": issue.summary if issue else "",
                    "status": issue.status if issue else None,
                    "issue_type": issue.issue_type if issue else None,
                    "score": round(float(scores[index]), 4),
                }
            )
        return results
