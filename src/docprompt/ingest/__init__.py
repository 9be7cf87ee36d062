"""docprompt ingestion pipeline."""

from docprompt.ingest.base import BaseChunker
from docprompt.ingest.checksums import ChecksumTracker
from docprompt.ingest.crawler import PageFetcher, WebsiteCrawler
from docprompt.ingest.indexer import IndexerConfig, SectionIndexer
from docprompt.ingest.items import ContentItem, ItemData, create_checksum
from docprompt.ingest.markdown import MarkdownChunker
from docprompt.ingest.orchestrator import TrainingOptions, TrainingOrchestrator
from docprompt.ingest.plaintext import PlainTextChunker
from docprompt.ingest.state import training_state_message

__all__ = [
    "BaseChunker",
    "ChecksumTracker",
    "ContentItem",
    "IndexerConfig",
    "ItemData",
    "MarkdownChunker",
    "PageFetcher",
    "PlainTextChunker",
    "SectionIndexer",
    "TrainingOptions",
    "TrainingOrchestrator",
    "WebsiteCrawler",
    "create_checksum",
    "training_state_message",
]
