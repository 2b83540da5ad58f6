"""Token-budgeted context assembly for the journal companion.

One pass per request, tiers in strict order, each consuming what the previous
ones left unused:

1. conversation: the last few messages, trimmed oldest-first to a small cap
2. pinned: always-include notes, each item all-or-nothing
3. custom: notes selected for this session, up to a share of what remains
4. retrieved: similarity hits, greedily, until the budget runs out

Blocks are included whole or not at all; their estimated costs never sum past
the request's budget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from budget import ContextBudget, cut_at_sentence, estimate_tokens
from models import ConversationTurn
from retriever import RetrievalHit

logger = logging.getLogger(__name__)

TIER_INSTRUCTIONS = "instructions"
TIER_CONVERSATION = "conversation"
TIER_PINNED = "pinned"
TIER_CUSTOM = "custom"
TIER_RETRIEVED = "retrieved"

TIER_ORDER = (TIER_INSTRUCTIONS, TIER_CONVERSATION, TIER_PINNED, TIER_CUSTOM, TIER_RETRIEVED)

TIER_HEADERS = {
    TIER_CONVERSATION: "--- Our Recent Conversation ---",
    TIER_PINNED: "Important context you should know:",
    TIER_CUSTOM: "Specific entries you wanted me to consider:",
    TIER_RETRIEVED: "Related things you've written about:",
}

DEFAULT_INSTRUCTIONS = (
    "Background from the user's journal follows. "
    "Use it when it helps answer their message."
)

# Shortest slice of a single oversized message worth keeping.
_MIN_MESSAGE_CHARS = 40


@dataclass(frozen=True)
class ContextItem:
    document_id: str
    label: str
    text: str


@dataclass(frozen=True)
class ContextBlock:
    tier: str
    text: str
    tokens: int
    sources: Tuple[str, ...] = ()


@dataclass
class AssembledContext:
    text: str
    blocks: List[ContextBlock]
    budget: ContextBudget
    retrieved: List[RetrievalHit] = field(default_factory=list)
    skipped: Dict[str, List[str]] = field(default_factory=dict)
    degraded: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(block.tokens for block in self.blocks)

    def usage(self) -> Dict[str, int]:
        usage = {tier: 0 for tier in TIER_ORDER}
        for block in self.blocks:
            usage[block.tier] += block.tokens
        return usage

    def block(self, tier: str) -> Optional[ContextBlock]:
        for block in self.blocks:
            if block.tier == tier:
                return block
        return None


def _render(tier: str, entries: Sequence[str], separator: str = "\n\n") -> str:
    return TIER_HEADERS[tier] + "\n" + separator.join(entries)


def _render_item(item: ContextItem) -> str:
    return f"{item.label}:\n{item.text.strip()}"


def _render_turn(turn: ConversationTurn) -> str:
    speaker = "User" if turn.role == "user" else "Assistant"
    return f"{speaker}: {turn.content.strip()}"


class ContextAllocator:
    def __init__(
        self,
        retriever=None,
        top_k: int = 10,
        instructions: str = DEFAULT_INSTRUCTIONS,
        describe_document: Optional[Callable[[str], str]] = None,
    ):
        """
        Args:
            retriever: Object with find_similar(query, top_k) and corpus_size();
                None disables the retrieval tier
            top_k: Candidates requested from the retriever
            instructions: Leading block; empty string to omit it
            describe_document: Maps a document id to a display label
        """
        self.retriever = retriever
        self.top_k = top_k
        self.instructions = instructions
        self.describe_document = describe_document or (lambda document_id: document_id)

    def allocate(
        self,
        query: str,
        budget: ContextBudget,
        history: Sequence[ConversationTurn] = (),
        pinned: Sequence[ContextItem] = (),
        custom: Sequence[ContextItem] = (),
    ) -> AssembledContext:
        remaining = budget.total_tokens
        blocks: List[ContextBlock] = []
        skipped: Dict[str, List[str]] = {}

        if self.instructions:
            cost = estimate_tokens(self.instructions)
            if cost <= remaining:
                blocks.append(ContextBlock(TIER_INSTRUCTIONS, self.instructions, cost))
                remaining -= cost

        conversation = self._conversation_block(history, min(budget.conversation_cap, remaining), budget.conversation_window)
        if conversation is not None:
            blocks.append(conversation)
            remaining -= conversation.tokens

        included: Set[str] = set()

        pinned_block, pinned_skipped = self._pinned_block(pinned, min(budget.pinned_allowance, remaining), included)
        if pinned_block is not None:
            blocks.append(pinned_block)
            remaining -= pinned_block.tokens
            included.update(pinned_block.sources)
        if pinned_skipped:
            skipped[TIER_PINNED] = pinned_skipped

        custom_block, custom_skipped = self._custom_block(custom, budget.custom_ceiling(remaining), included)
        if custom_block is not None:
            blocks.append(custom_block)
            remaining -= custom_block.tokens
            included.update(custom_block.sources)
        if custom_skipped:
            skipped[TIER_CUSTOM] = custom_skipped

        retrieved_block, hits, degraded = self._retrieved_block(query, remaining, included)
        if retrieved_block is not None:
            blocks.append(retrieved_block)
            remaining -= retrieved_block.tokens

        context = AssembledContext(
            text="\n\n".join(block.text for block in blocks),
            blocks=blocks,
            budget=budget,
            retrieved=hits,
            skipped=skipped,
            degraded=degraded,
        )
        logger.info(
            "Assembled context: %d/%d tokens across %d blocks%s",
            context.total_tokens,
            budget.total_tokens,
            len(blocks),
            " (degraded)" if degraded else "",
        )
        return context

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------
    def _conversation_block(
        self,
        history: Sequence[ConversationTurn],
        cap: int,
        window: int,
    ) -> Optional[ContextBlock]:
        turns = [turn for turn in history if turn.content and turn.content.strip()]
        if not turns or cap <= 0 or window <= 0:
            return None

        lines = [_render_turn(turn) for turn in turns[-window:]]
        while lines:
            text = _render(TIER_CONVERSATION, lines, separator="\n")
            cost = estimate_tokens(text)
            if cost <= cap:
                return ContextBlock(TIER_CONVERSATION, text, cost, ())
            lines.pop(0)

        # The newest message alone is over the cap; keep its leading whole sentences.
        newest = _render_turn(turns[-1])
        max_chars = len(newest)
        while max_chars >= _MIN_MESSAGE_CHARS:
            max_chars = int(max_chars * 0.8)
            shortened = cut_at_sentence(newest, max_chars)
            if shortened is None:
                continue
            text = _render(TIER_CONVERSATION, [shortened], separator="\n")
            cost = estimate_tokens(text)
            if cost <= cap:
                return ContextBlock(TIER_CONVERSATION, text, cost, ())
        logger.debug("Conversation history does not fit in %d tokens", cap)
        return None

    def _pinned_block(
        self,
        items: Sequence[ContextItem],
        allowance: int,
        included: Set[str],
    ) -> Tuple[Optional[ContextBlock], List[str]]:
        entries: List[str] = []
        sources: List[str] = []
        skipped: List[str] = []
        cost = 0

        for item in items:
            if item.document_id in included or item.document_id in sources or not item.text.strip():
                continue
            candidate = entries + [_render_item(item)]
            candidate_cost = estimate_tokens(_render(TIER_PINNED, candidate))
            if candidate_cost > allowance:
                skipped.append(item.document_id)
                continue
            entries = candidate
            sources.append(item.document_id)
            cost = candidate_cost

        if skipped:
            logger.info("Skipped %d pinned item(s) over the %d token allowance", len(skipped), allowance)
        if not entries:
            return None, skipped
        return ContextBlock(TIER_PINNED, _render(TIER_PINNED, entries), cost, tuple(sources)), skipped

    def _custom_block(
        self,
        items: Sequence[ContextItem],
        ceiling: int,
        included: Set[str],
    ) -> Tuple[Optional[ContextBlock], List[str]]:
        entries: List[str] = []
        sources: List[str] = []
        skipped: List[str] = []
        cost = 0

        pending = [
            item
            for item in items
            if item.document_id not in included and item.text.strip()
        ]
        for position, item in enumerate(pending):
            if item.document_id in sources:
                continue
            candidate = entries + [_render_item(item)]
            candidate_cost = estimate_tokens(_render(TIER_CUSTOM, candidate))
            if candidate_cost > ceiling:
                skipped.extend(rest.document_id for rest in pending[position:] if rest.document_id not in sources)
                break
            entries = candidate
            sources.append(item.document_id)
            cost = candidate_cost

        if skipped:
            logger.info("Custom selection stopped at the %d token ceiling; %d item(s) left out", ceiling, len(skipped))
        if not entries:
            return None, skipped
        return ContextBlock(TIER_CUSTOM, _render(TIER_CUSTOM, entries), cost, tuple(sources)), skipped

    def _retrieved_block(
        self,
        query: str,
        remaining: int,
        included: Set[str],
    ) -> Tuple[Optional[ContextBlock], List[RetrievalHit], bool]:
        if self.retriever is None or not query or not query.strip():
            return None, [], False

        try:
            if self.retriever.corpus_size() == 0:
                logger.warning("No embeddings in the corpus; building context without retrieved entries")
                return None, [], True
            hits = self.retriever.find_similar(query, self.top_k)
        except Exception as e:
            logger.warning("Retrieval failed; building context without retrieved entries: %s", e)
            return None, [], True

        entries: List[str] = []
        sources: List[str] = []
        chosen: List[RetrievalHit] = []
        cost = 0

        for hit in hits:
            if hit.note_id in included:
                continue
            entry = f"{self._hit_label(hit)}:\n{hit.text.strip()}"
            candidate = entries + [entry]
            candidate_cost = estimate_tokens(_render(TIER_RETRIEVED, candidate))
            if candidate_cost > remaining:
                continue
            entries = candidate
            chosen.append(hit)
            if hit.note_id not in sources:
                sources.append(hit.note_id)
            cost = candidate_cost

        if not entries:
            return None, chosen, False
        return ContextBlock(TIER_RETRIEVED, _render(TIER_RETRIEVED, entries), cost, tuple(sources)), chosen, False

    def _hit_label(self, hit: RetrievalHit) -> str:
        label = self.describe_document(hit.note_id)
        if hit.note_updated_at > 0:
            written = datetime.fromtimestamp(hit.note_updated_at).strftime("%Y-%m-%d")
            return f"{label} ({written}, relevance {hit.score:.0%})"
        return f"{label} (relevance {hit.score:.0%})"
