"""Recursive retrieval of a page's block tree."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from notion_publisher.core.backoff import BackoffPolicy, RetryState, execute
from notion_publisher.providers.content_types import ContentNode
from notion_publisher.providers.notion import NOTION_MAX_PAGE_SIZE, parse_block

if TYPE_CHECKING:
    from notion_publisher.providers.notion import NotionClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 16
DEFAULT_CONCURRENCY = 3


class FetchError(Exception):
    """A block listing could not be completed. The whole tree is discarded."""

    retriable = False

    def __init__(self, block_id: str, message: str):
        super().__init__(f"Failed to fetch children of {block_id}: {message}")
        self.block_id = block_id


class TreeFetcher:
    """Fetches a block tree page by page, expanding children recursively.

    Sibling subtrees are fetched concurrently (bounded by ``concurrency``),
    but results always keep the order of the parent's listing.
    """

    def __init__(
        self,
        notion: "NotionClient",
        policy: BackoffPolicy,
        *,
        page_size: int = NOTION_MAX_PAGE_SIZE,
        page_delay: float = 0.35,
        max_depth: int = DEFAULT_MAX_DEPTH,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._notion = notion
        self._policy = policy
        self._page_size = page_size
        self._page_delay = page_delay
        self._max_depth = max_depth
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def fetch_tree(self, block_id: str) -> list[ContentNode]:
        """Return the complete ordered tree under ``block_id``.

        Raises:
            FetchError: A listing exhausted its retries, or the tree is
                deeper than ``max_depth`` or contains a cycle.
        """
        return await self._fetch(block_id, depth=0, ancestors=frozenset())

    async def _fetch(self, block_id: str, depth: int, ancestors: frozenset[str]) -> list[ContentNode]:
        if block_id in ancestors:
            raise FetchError(block_id, "block is its own ancestor")
        if depth > self._max_depth:
            raise FetchError(block_id, f"tree deeper than {self._max_depth} levels")

        path = ancestors | {block_id}
        nodes: list[ContentNode] = []
        cursor: str | None = None
        has_more = True

        while has_more:
            page = await self._list_page(block_id, cursor)
            nodes.extend(await self._expand_all(page.results, depth, path))
            has_more = page.has_more and bool(page.next_cursor)
            cursor = page.next_cursor
            if has_more and self._page_delay > 0:
                await asyncio.sleep(self._page_delay)

        return nodes

    async def _expand_all(self, results: list, depth: int, path: frozenset[str]) -> list[ContentNode]:
        """Expand siblings concurrently. On the first failure the rest are
        cancelled and awaited, so no listing outlives the call."""
        parsed = [parse_block(raw) for raw in results]
        tasks = [asyncio.create_task(self._expand(node, depth, path)) for node in parsed]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _expand(self, node: ContentNode, depth: int, path: frozenset[str]) -> ContentNode:
        if not node.has_children:
            return node
        children = await self._fetch(node.id, depth + 1, path)
        return replace(node, children=tuple(children))

    async def _list_page(self, block_id: str, cursor: str | None):
        def _log_retry(state: RetryState) -> None:
            logger.debug(f"Listing {block_id} attempt {state.attempt} failed: {state.last_error}")

        async def _list():
            async with self._semaphore:
                return await self._notion.list_block_children(
                    block_id, page_size=self._page_size, start_cursor=cursor
                )

        try:
            return await execute(
                _list,
                self._policy,
                on_retry=_log_retry,
                name=f"list children of {block_id}",
            )
        except Exception as e:
            logger.error(f"Failed to retrieve blocks for {block_id}: {e}")
            raise FetchError(block_id, str(e)) from e
