"""Shared pytest fixtures and configuration."""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure the flat modules are importable without an install
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from chunkstore import RemoteStoreError  # noqa: E402
from ecobook import OpeningBook  # noqa: E402


ECO_TSV = """eco\tname\tpgn
B00\tKing's Pawn Game\t1. e4
C20\tKing's Pawn Game\t1. e4 e5
C40\tKing's Knight Opening\t1. e4 e5 2. Nf3
C60\tRuy Lopez\t1. e4 e5 2. Nf3 Nc6 3. Bb5
D00\tQueen's Pawn Game\t1. d4 d5
"""


def pgn_game(white="Carlsen, Magnus", black="Caruana, Fabiano", result="1-0",
             date="2019.01.20", round_="1", moves="1. e4 e5 2. Nf3 Nc6 3. Bb5 a6",
             event="Tata Steel", extra_headers=None) -> str:
    headers = [
        ("Event", event),
        ("Site", "Wijk aan Zee NED"),
        ("Date", date),
        ("Round", round_),
        ("White", white),
        ("Black", black),
        ("Result", result),
    ]
    headers.extend((extra_headers or {}).items())
    lines = [f'[{tag} "{value}"]' for tag, value in headers if value is not None]
    return "\n".join(lines) + f"\n\n{moves} {result}\n\n"


class MemoryObjectStore:
    """Dict-backed object store that records every write."""

    def __init__(self, blobs: Optional[Dict[str, bytes]] = None):
        self.blobs: Dict[str, bytes] = dict(blobs or {})
        self.writes: List[str] = []
        self.fail_list = False
        self.fail_get: set = set()

    def list(self, prefix: str) -> List[str]:
        if self.fail_list:
            raise RemoteStoreError("listing unavailable")
        return sorted(k for k in self.blobs if k.startswith(prefix))

    def get(self, key: str) -> Optional[bytes]:
        if key in self.fail_get:
            raise RemoteStoreError(f"cannot read {key}")
        return self.blobs.get(key)

    def set(self, key: str, content: bytes) -> None:
        self.blobs[key] = content
        self.writes.append(key)


@pytest.fixture
def make_pgn():
    """Factory for single-game PGN text."""
    return pgn_game


@pytest.fixture
def index_dir(tmp_path):
    path = tmp_path / "indexes"
    path.mkdir()
    return path


@pytest.fixture
def sample_pgn():
    """Four games: two distinct, one duplicate of the first, one without a white player."""
    return "".join([
        pgn_game(),
        pgn_game(white="Nakamura, Hikaru", black="So, Wesley", result="1/2-1/2",
                 date="2019.01.21", round_="2", moves="1. d4 d5 2. c4 e6"),
        pgn_game(white="carlsen,  magnus", black="CARUANA, Fabiano",
                 moves="1. e4 e5 2. Nf3 Nc6 3. Bb5 Nf6"),
        pgn_game(white=None, black="Anand, Viswanathan", date="2019.01.22", round_="3"),
    ])


@pytest.fixture
def eco_tsv(tmp_path):
    path = tmp_path / "eco.tsv"
    path.write_text(ECO_TSV, encoding="utf-8")
    return path


@pytest.fixture
def book(eco_tsv):
    return OpeningBook.from_tsv(eco_tsv)


@pytest.fixture
def memory_store():
    return MemoryObjectStore()
