"""
BM25 Index - 課程大綱全文索引
每個學期各建一個 BM25Okapi，重建完成後整份快照一次替換，查詢期間不會看到半套索引
"""
import hashlib
import logging
import threading
import unicodedata
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from rank_bm25 import BM25Okapi

from ntpu_assistant.schemas.cache import Semester, Syllabus
from ntpu_assistant.services.metrics import Metrics

logger = logging.getLogger(__name__)

K1 = 1.5
B = 0.75
DEFAULT_SEMESTER_COUNT = 2
MAX_SEARCH_RESULTS = 10

_CJK_RANGES = (
    (0x3040, 0x309F),    # Hiragana
    (0x30A0, 0x30FF),    # Katakana
    (0x3400, 0x4DBF),    # CJK Extension A
    (0x4E00, 0x9FFF),    # CJK Unified Ideographs
    (0xAC00, 0xD7AF),    # Hangul Syllables
    (0x1100, 0x11FF),    # Hangul Jamo
    (0xF900, 0xFAFF),    # CJK Compatibility Ideographs
    (0x20000, 0x2A6DF),  # CJK Extension B
)


def _is_cjk(ch: str) -> bool:
    code = ord(ch)
    return any(lo <= code <= hi for lo, hi in _CJK_RANGES)


def _is_word_char(ch: str) -> bool:
    return unicodedata.category(ch)[0] in ("L", "N")


def tokenize(text: str) -> List[str]:
    """
    中英混合斷詞

    - 轉小寫
    - 非字母、非數字的字元視為分隔
    - 中日韓文字一字一個 token，其餘連續字元為一個詞
    """
    tokens: List[str] = []
    word: List[str] = []
    for ch in text.lower():
        if _is_cjk(ch):
            if word:
                tokens.append("".join(word))
                word = []
            tokens.append(ch)
        elif _is_word_char(ch):
            word.append(ch)
        elif word:
            tokens.append("".join(word))
            word = []
    if word:
        tokens.append("".join(word))
    return tokens


class SearchHit(NamedTuple):
    uid: str
    score: float
    confidence: float
    title: str = ""
    teachers: Tuple[str, ...] = ()
    year: int = 0
    term: int = 0


class _DocMeta(NamedTuple):
    title: str
    teachers: Tuple[str, ...]
    year: int
    term: int


def relative_confidence(score: float, best: float) -> float:
    """
    相對於該學期最佳分數的信心值，最佳結果為 1.0

    文件很少時 IDF 可能為負，全部分數都是負值；此時越接近 0 越相關，改用 best / score
    """
    if best > 0 and score > 0:
        return min(score / best, 1.0)
    if best < 0 and score < 0:
        return max(min(best / score, 1.0), 0.0)
    return 0.0


class _SemesterIndex:
    def __init__(self, uids: List[str], corpus: List[List[str]], metadata: Dict[str, _DocMeta]):
        self.uids = uids
        self.corpus = corpus
        self.metadata = metadata
        # 全部文件都沒有 token 時 avgdl 為 0，BM25Okapi 無法計分
        self.engine = BM25Okapi(corpus, k1=K1, b=B) if any(corpus) else None

    def search(self, tokens: Sequence[str], top_k: int) -> List[Tuple[str, float]]:
        if self.engine is None:
            return []
        scores = self.engine.get_scores(list(tokens))
        scored = [(self.uids[i], float(s)) for i, s in enumerate(scores) if s != 0]
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:top_k] if top_k > 0 else scored


class _Snapshot:
    """不可變的索引快照"""

    def __init__(self, indexes: Dict[Semester, _SemesterIndex]):
        self.indexes = indexes
        self.semesters: List[Semester] = sorted(indexes, reverse=True)
        self.uids = frozenset(uid for idx in indexes.values() for uid in idx.uids)

    def count(self) -> int:
        return sum(len(idx.uids) for idx in self.indexes.values())


def build_snapshot(syllabi: Iterable[Syllabus]) -> _Snapshot:
    groups: Dict[Semester, List[Syllabus]] = {}
    for syllabus in syllabi:
        if not syllabus.content_hash:
            continue
        groups.setdefault(Semester(syllabus.year, syllabus.term), []).append(syllabus)

    indexes: Dict[Semester, _SemesterIndex] = {}
    for semester, items in groups.items():
        items.sort(key=lambda s: s.uid)
        uids, corpus, metadata = [], [], {}
        for syllabus in items:
            if syllabus.uid in metadata:
                continue
            # 斷不出 token 的文件也收錄，筆數需等於可索引的大綱數
            tokens = tokenize(syllabus.document_text())
            uids.append(syllabus.uid)
            corpus.append(tokens)
            metadata[syllabus.uid] = _DocMeta(
                syllabus.title, tuple(syllabus.teachers), syllabus.year, syllabus.term
            )
        if uids:
            indexes[semester] = _SemesterIndex(uids, corpus, metadata)
    return _Snapshot(indexes)


class BM25Index:
    """
    課程大綱 BM25 索引

    rebuild() 在鎖外建好新快照後才替換 self._snapshot；
    查詢端取一次 self._snapshot 參考即可，不需要加鎖
    """

    def __init__(self, metrics: Optional[Metrics] = None):
        self.metrics = metrics
        self._snapshot = _Snapshot({})
        self._initialized = False
        self._rebuild_lock = threading.Lock()

    def rebuild(self, syllabi: Iterable[Syllabus]) -> int:
        with self._rebuild_lock:
            snapshot = build_snapshot(syllabi)
            self._snapshot = snapshot
            self._initialized = True
        count = snapshot.count()
        if self.metrics is not None:
            self.metrics.set_index_size("syllabus", count)
        logger.info("[BM25] 索引重建完成: %d 門課程, %d 個學期", count, len(snapshot.indexes))
        return count

    def rebuild_from_store(self, store) -> int:
        """從快取讀出所有有內容的大綱並重建；讀取失敗時保留舊索引"""
        return self.rebuild(store.get_indexable_syllabi())

    def is_enabled(self) -> bool:
        return self._initialized and bool(self._snapshot.indexes)

    def count(self) -> int:
        return self._snapshot.count()

    def contains(self, uid: str) -> bool:
        return uid in self._snapshot.uids

    def semesters(self) -> List[Semester]:
        return list(self._snapshot.semesters)

    def digest(self) -> str:
        """索引內容的雜湊，用來比對兩次重建結果是否相同"""
        snapshot = self._snapshot
        h = hashlib.sha256()
        for semester in snapshot.semesters:
            idx = snapshot.indexes[semester]
            h.update(f"{semester}\n".encode("utf-8"))
            for uid, tokens in zip(idx.uids, idx.corpus):
                h.update(uid.encode("utf-8"))
                h.update(b"\x00")
                h.update(" ".join(tokens).encode("utf-8"))
                h.update(b"\n")
        return h.hexdigest()

    def search(self, query: str, k: int = MAX_SEARCH_RESULTS,
               semesters: Optional[Sequence[Semester]] = None) -> List[SearchHit]:
        """
        查詢課程大綱

        預設只查最新兩個學期；各學期分別計分，分數不為 0 即算命中，confidence 相對於該學期最佳分數
        """
        snapshot = self._snapshot
        if not snapshot.indexes or not query.strip():
            return []
        tokens = tokenize(query)
        if not tokens:
            return []

        targets = list(semesters) if semesters else snapshot.semesters[:DEFAULT_SEMESTER_COUNT]
        hits: List[SearchHit] = []
        for semester in targets:
            idx = snapshot.indexes.get(Semester(*semester))
            if idx is None:
                continue
            scored = idx.search(tokens, k)
            if not scored:
                continue
            best = scored[0][1]
            for uid, score in scored:
                meta = idx.metadata[uid]
                hits.append(SearchHit(
                    uid=uid,
                    score=score,
                    confidence=relative_confidence(score, best),
                    title=meta.title,
                    teachers=meta.teachers,
                    year=meta.year,
                    term=meta.term,
                ))
        hits.sort(key=lambda h: (-h.score, h.uid))
        return hits[:k] if k > 0 else hits
