"""
Two-stage question matching: BM25 text relevance first, then a keyword to
category fallback for paraphrases that share too few words with any entry.
"""

import re
from typing import Dict, List, Optional

from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import MatchResult
from supervisor_desk.services.knowledge_base import KnowledgeStore

logger = get_plain_logger(__name__)


class Matcher:
    def __init__(
        self,
        store: KnowledgeStore,
        confidence_threshold: float = 0.5,
        category_keywords: Optional[Dict[str, List[str]]] = None
    ):
        self.store = store
        self.confidence_threshold = confidence_threshold
        # Copy as an ordered list of pairs so later mutation of the config can't reorder checks
        self.category_keywords = [
            (category, [k.lower() for k in keywords])
            for category, keywords in (category_keywords or {}).items()
        ]

    def lookup(self, question: str) -> MatchResult:
        """
        Resolve a free-text question to a knowledge entry

        A miss still reports the best rejected text score, so an escalation
        can record how close the automated search came.
        """
        rejected_score = None

        text_match = self.store.find_best_text_match(question)
        if text_match:
            entry, score = text_match
            if score > self.confidence_threshold:
                entry = self.store.record_usage(entry.id) or entry
                logger.info(f"✓ KB text hit #{entry.id} ({score:.2f}): '{entry.question}'")
                return MatchResult(found=True, entry=entry, score=score, stage="text")
            rejected_score = score

        for category in self.matching_categories(question):
            entry = self.store.find_by_category(category)
            if entry:
                entry = self.store.record_usage(entry.id) or entry
                logger.info(f"✓ KB category hit #{entry.id} [{category}]: '{entry.question}'")
                return MatchResult(found=True, entry=entry, stage="category")

        logger.info(f"✗ No KB match for: '{question}'")
        return MatchResult(found=False, score=rejected_score)

    def matching_categories(self, question: str) -> List[str]:
        """Categories whose keywords appear in the question, in configured order"""
        normalized = re.sub(r"\s+", " ", question.lower()).strip()
        return [
            category
            for category, keywords in self.category_keywords
            if any(keyword in normalized for keyword in keywords)
        ]
