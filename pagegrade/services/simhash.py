"""
pagegrade/services/simhash.py
64-bit SimHash fingerprints for near-duplicate text block detection.

Each token is hashed with SHA-1; the first 64 bits (most significant bit
first) vote +1/-1 into a 64-slot vector, and the fingerprint keeps a 1 bit
wherever the vote is >= 0. Similarity = 1 - hamming / 64.
"""
import hashlib
import re
from itertools import combinations
from typing import Dict, List

from bs4 import BeautifulSoup

HASH_BITS = 64
BLOCK_SELECTOR = "main, article, section, p, li, h1, h2, h3"
MIN_BLOCK_CHARS = 120
MAX_BLOCKS = 40
DUPLICATE_THRESHOLD = 0.92

_WS_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"\b[a-z0-9][a-z0-9_-]{1,}\b")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(_WS_RE.sub(" ", text.lower()))


def _token_bits(token: str) -> int:
    digest = hashlib.sha1(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def compute_simhash(text: str) -> int:
    tokens = tokenize(text)
    if not tokens:
        return 0

    vector = [0] * HASH_BITS
    for token in tokens:
        bits = _token_bits(token)
        for i in range(HASH_BITS):
            if (bits >> (HASH_BITS - 1 - i)) & 1:
                vector[i] += 1
            else:
                vector[i] -= 1

    fingerprint = 0
    for i, weight in enumerate(vector):
        if weight >= 0:
            fingerprint |= 1 << (HASH_BITS - 1 - i)
    return fingerprint


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def simhash_similarity(a: int, b: int) -> float:
    return 1 - hamming_distance(a, b) / HASH_BITS


def extract_text_blocks(soup: BeautifulSoup) -> List[str]:
    """Block-level texts of at least 120 chars, document order, capped at 40."""
    blocks = []
    for node in soup.select(BLOCK_SELECTOR):
        text = node.get_text().strip()
        if len(text) >= MIN_BLOCK_CHARS:
            blocks.append(text)
            if len(blocks) >= MAX_BLOCKS:
                break
    return blocks


def fingerprint_blocks(blocks: List[str]) -> List[Dict]:
    return [
        {
            "index": index,
            "preview": text[:140],
            "tokens": len(tokenize(text)),
            "hash": compute_simhash(text),
        }
        for index, text in enumerate(blocks)
    ]


def find_near_duplicates(fingerprints: List[Dict], threshold: float = DUPLICATE_THRESHOLD) -> List[Dict]:
    """All pairs (a < b) whose similarity is at or above threshold."""
    duplicates = []
    for left, right in combinations(fingerprints, 2):
        similarity = simhash_similarity(left["hash"], right["hash"])
        if similarity >= threshold:
            duplicates.append({
                "a": left["index"],
                "b": right["index"],
                "similarity": round(similarity, 3),
            })
    return duplicates
