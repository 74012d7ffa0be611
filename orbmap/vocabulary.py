"""A bag-of-words vocabulary tree of binary ORB descriptors, stored as text or binary."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum

# Bytes in one ORB descriptor.
DESCRIPTOR_BYTES = 32

# Binary layout: node count (root included), record size, k, levels, scoring, weighting.
_HEADER = struct.Struct("<IIiiii")
# One node record: parent id, descriptor, weight, leaf flag.
_RECORD = struct.Struct(f"<I{DESCRIPTOR_BYTES}sf?")

_MAX_K = 20
_MAX_LEVELS = 10


class VocabularyError(ValueError):
    """A vocabulary file could not be understood."""


class WeightingType(IntEnum):
    TF_IDF = 0
    TF = 1
    IDF = 2
    BINARY = 3


class ScoringType(IntEnum):
    L1_NORM = 0
    L2_NORM = 1
    CHI_SQUARE = 2
    KL = 3
    BHATTACHARYYA = 4
    DOT_PRODUCT = 5


@dataclass
class VocabularyNode:
    """One node of the vocabulary tree; leaves carry a word id."""

    id: int
    parent: int = 0
    descriptor: bytes = bytes(DESCRIPTOR_BYTES)
    weight: float = 0.0
    word_id: int | None = None
    children: list = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children


def _parse_descriptor(tokens) -> bytes:
    try:
        return bytes(int(token) for token in tokens)
    except ValueError as exc:
        raise VocabularyError(f"bad descriptor: {exc}") from exc


def _link(nodes, leaf_flags) -> list:
    """Attach children to parents and number the leaves as words."""
    words = []
    for node, leaf in zip(nodes[1:], leaf_flags[1:]):
        nodes[node.parent].children.append(node.id)
        if leaf:
            node.word_id = len(words)
            words.append(node)
    return words


class OrbVocabulary:
    """A k-ary vocabulary tree with ``levels`` levels over ORB descriptors."""

    def __init__(
        self,
        k=10,
        levels=5,
        weighting=WeightingType.TF_IDF,
        scoring=ScoringType.L1_NORM,
    ):
        self.k = k
        self.levels = levels
        self.weighting = WeightingType(weighting)
        self.scoring = ScoringType(scoring)
        self.nodes: list = []
        self.words: list = []

    def __len__(self) -> int:
        """Number of words (leaves) in the vocabulary."""
        return len(self.words)

    # -- text format -------------------------------------------------------

    def load_text(self, path):
        """Load the vocabulary from its text form; raise VocabularyError if malformed."""
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()

        header = lines[0].split() if lines else []
        if len(header) < 4:
            raise VocabularyError("missing vocabulary header")
        try:
            k, levels, scoring, weighting = (int(token) for token in header[:4])
        except ValueError as exc:
            raise VocabularyError(f"bad vocabulary header: {exc}") from exc
        if not (
            0 <= k <= _MAX_K
            and 1 <= levels <= _MAX_LEVELS
            and 0 <= scoring <= max(ScoringType)
            and 0 <= weighting <= max(WeightingType)
        ):
            raise VocabularyError("this is not a correct vocabulary text file")

        nodes = [VocabularyNode(0)]
        leaf_flags = [False]
        needed = 2 + DESCRIPTOR_BYTES + 1
        for line in lines[1:]:
            tokens = line.split()
            if not tokens:
                continue
            if len(tokens) < needed:
                raise VocabularyError(
                    f"node line has {len(tokens)} fields, expected {needed}"
                )
            try:
                parent = int(tokens[0])
                leaf = int(tokens[1]) > 0
                weight = float(tokens[needed - 1])
            except ValueError as exc:
                raise VocabularyError(f"bad node line: {exc}") from exc
            descriptor = _parse_descriptor(tokens[2 : 2 + DESCRIPTOR_BYTES])
            node_id = len(nodes)
            if not 0 <= parent < node_id:
                raise VocabularyError(f"node {node_id} has unknown parent {parent}")
            nodes.append(VocabularyNode(node_id, parent, descriptor, weight))
            leaf_flags.append(leaf)

        self.words = _link(nodes, leaf_flags)
        self.nodes = nodes
        self.k = k
        self.levels = levels
        self.scoring = ScoringType(scoring)
        self.weighting = WeightingType(weighting)

    def save_text(self, path):
        """Write the vocabulary in its text form."""
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(
                f"{self.k} {self.levels}  {int(self.scoring)} {int(self.weighting)}\n"
            )
            for node in self.nodes[1:]:
                descriptor = " ".join(str(b) for b in node.descriptor)
                leaf = 1 if node.is_leaf else 0
                handle.write(f"{node.parent} {leaf} {descriptor} {node.weight:g}\n")

    # -- binary format -----------------------------------------------------

    def load_binary(self, path):
        """Load the vocabulary from its binary form; raise VocabularyError if malformed."""
        with open(path, "rb") as handle:
            data = handle.read()
        if len(data) < _HEADER.size:
            raise VocabularyError("truncated vocabulary header")
        _, record_size, k, levels, scoring, weighting = _HEADER.unpack_from(data)
        if record_size < _RECORD.size:
            raise VocabularyError(f"node record size {record_size} is too small")
        try:
            scoring = ScoringType(scoring)
            weighting = WeightingType(weighting)
        except ValueError as exc:
            raise VocabularyError(str(exc)) from exc

        body = memoryview(data)[_HEADER.size :]
        if len(body) % record_size:
            raise VocabularyError("truncated node record")
        count = len(body) // record_size

        nodes = [VocabularyNode(0)]
        leaf_flags = [False]
        for node_id in range(1, count + 1):
            offset = (node_id - 1) * record_size
            parent, descriptor, weight, leaf = _RECORD.unpack_from(body, offset)
            if not 0 <= parent <= count or parent == node_id:
                raise VocabularyError(f"node {node_id} has unknown parent {parent}")
            nodes.append(VocabularyNode(node_id, parent, bytes(descriptor), weight))
            leaf_flags.append(bool(leaf))

        self.words = _link(nodes, leaf_flags)
        self.nodes = nodes
        self.k = k
        self.levels = levels
        self.scoring = scoring
        self.weighting = weighting

    def save_binary(self, path):
        """Write the vocabulary in its binary form."""
        with open(os.fspath(path), "wb") as handle:
            handle.write(
                _HEADER.pack(
                    len(self.nodes),
                    _RECORD.size,
                    self.k,
                    self.levels,
                    int(self.scoring),
                    int(self.weighting),
                )
            )
            for node in self.nodes[1:]:
                handle.write(
                    _RECORD.pack(node.parent, node.descriptor, node.weight, node.is_leaf)
                )