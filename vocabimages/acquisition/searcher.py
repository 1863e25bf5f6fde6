"""Multi-source image search with term expansion and ranking."""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from vocabimages.catalog.models import utcnow
from vocabimages.errors import SourceError, SourceTimeout, SourceUnavailable
from vocabimages.utils.logger import logger as LOGGER

from .source import ImageSourceClient, SearchOptions, SourceCandidate, is_valid_candidate


@dataclass
class SourceReport:
    """What one source contributed to a search."""
    found: int = 0
    errors: list[str] = field(default_factory=list)
    searched_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.found == 0 and bool(self.errors)


@dataclass
class SearchOutcome:
    """Ranked candidates plus per-source bookkeeping."""
    candidates: list[SourceCandidate]
    terms: list[str]
    sources: dict[str, SourceReport] = field(default_factory=dict)

    @property
    def errors(self) -> list[tuple[str, str]]:
        return [(name, message) for name, report in self.sources.items() for message in report.errors]


def _swap_plural(word: str) -> Optional[str]:
    if len(word) < 3:
        return None
    if word.endswith("ss"):
        return word + "es"
    if word.endswith("s"):
        return word[:-1]
    return word + "s"


def build_search_terms(item_name: str, category: str = "", max_terms: int = 3) -> list[str]:
    """Return search terms for an item, most specific context first.

    Terms are the item name, the item name with its category, and the item
    name with its last word's trailing-s plural swapped.
    """
    name = " ".join(item_name.split())
    if not name:
        return []

    terms = [name]
    if category:
        terms.append(f"{name} {category.strip()}")

    words = name.split(" ")
    variant = _swap_plural(words[-1])
    if variant:
        terms.append(" ".join(words[:-1] + [variant]))

    unique = []
    for term in terms:
        if term.lower() not in (t.lower() for t in unique):
            unique.append(term)
    return unique[:max_terms]


def resolution_rank(candidate: SourceCandidate) -> float:
    """Coarse preference for larger source images."""
    if candidate.width >= 1920 and candidate.height >= 1080:
        return 1.0
    if candidate.width >= 1280 and candidate.height >= 720:
        return 0.8
    if candidate.width >= 800 and candidate.height >= 600:
        return 0.6
    return 0.3


class SourceSearcher:
    """Queries sources in priority order until enough raw candidates are gathered.

    Args:
        clients: Sources in priority order
        timeout: Seconds allowed for a single search request
    """

    def __init__(self, clients: Sequence[ImageSourceClient], timeout: float = 20.0, per_page: int = 20):
        self.clients = list(clients)
        self.timeout = timeout
        self.per_page = per_page
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="search")

    @property
    def source_names(self) -> list[str]:
        return [c.name for c in self.clients]

    def get_client(self, name: str) -> Optional[ImageSourceClient]:
        for client in self.clients:
            if client.name == name:
                return client
        return None

    def search(
        self,
        item_name: str,
        category: str = "",
        sources: Optional[Iterable[str]] = None,
        max_candidates: int = 30,
        exclude: Optional[set[tuple[str, str]]] = None,
    ) -> SearchOutcome:
        """Search every configured source for an item.

        Args:
            item_name: Vocabulary item to find images for
            category: Category name added as search context
            sources: Restrict and reorder sources by name; default is all in priority order
            max_candidates: Stop once this many raw candidates were gathered
            exclude: (source, id) pairs to skip, e.g. candidates already stored

        Returns:
            SearchOutcome. A failing source never aborts the search.
        """
        terms = build_search_terms(item_name, category)
        outcome = SearchOutcome(candidates=[], terms=terms)
        seen = set(exclude or ())
        options = SearchOptions(per_page=self.per_page)

        for rank, client in enumerate(self._select(sources, outcome)):
            report = outcome.sources.setdefault(client.name, SourceReport())
            report.searched_at = utcnow()

            for term in terms:
                if len(outcome.candidates) >= max_candidates:
                    break
                try:
                    results = self._search_one(client, term, options)
                except SourceUnavailable as e:
                    LOGGER.warning(f"Source {client.name} unavailable: {e}")
                    report.errors.append(str(e))
                    break
                except SourceError as e:
                    LOGGER.warning(f"Source {client.name} failed for '{term}': {e}")
                    report.errors.append(str(e))
                    continue

                for candidate in results:
                    if (candidate.source, candidate.id) in seen or not is_valid_candidate(candidate, options):
                        continue
                    seen.add((candidate.source, candidate.id))
                    candidate.source_rank = rank
                    candidate.search_term = candidate.search_term or term
                    outcome.candidates.append(candidate)
                    report.found += 1
                    if len(outcome.candidates) >= max_candidates:
                        break

            if len(outcome.candidates) >= max_candidates:
                break

        outcome.candidates = self._rank(outcome.candidates, terms)
        failed = [name for name, report in outcome.sources.items() if report.failed]
        if failed:
            LOGGER.warning(f"Search for '{item_name}': no results from failing sources {', '.join(failed)}")
        LOGGER.info(
            f"Search for '{item_name}' found {len(outcome.candidates)} candidates "
            f"from {sum(1 for r in outcome.sources.values() if r.found)} sources"
        )
        return outcome

    def _select(self, sources: Optional[Iterable[str]], outcome: SearchOutcome) -> list[ImageSourceClient]:
        if sources is None:
            return list(self.clients)

        by_name = {c.name: c for c in self.clients}
        selected = []
        for name in sources:
            if name in by_name:
                selected.append(by_name[name])
            else:
                configured = ", ".join(self.source_names) or "none"
                outcome.sources.setdefault(name, SourceReport()).errors.append(
                    f"Source not configured: {name} (configured: {configured})"
                )
        return selected

    def _search_one(self, client: ImageSourceClient, term: str, options: SearchOptions) -> list[SourceCandidate]:
        future = self._executor.submit(client.search, term, options)
        try:
            return list(future.result(timeout=self.timeout))
        except FutureTimeout as e:
            future.cancel()
            raise SourceTimeout(f"{client.name}: search for '{term}' exceeded {self.timeout}s") from e
        except SourceError:
            raise
        except Exception as e:
            raise SourceError(f"{client.name}: {e}") from e

    def _rank(self, candidates: list[SourceCandidate], terms: list[str]) -> list[SourceCandidate]:
        term_order = {t: i for i, t in enumerate(terms)}
        return sorted(
            candidates,
            key=lambda c: (c.source_rank, term_order.get(c.search_term, len(terms)), -resolution_rank(c), c.position),
        )

    def close(self):
        self._executor.shutdown(wait=False)
