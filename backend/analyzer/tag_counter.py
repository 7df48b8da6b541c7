"""
Tag counter.

Counts element nodes of a given tag name. Markup is parsed into a tree with
BeautifulSoup, trying progressively more lenient strategies; if none yields
a usable tree, a regex over opening-tag tokens is used instead. The regex
path is a lower-fidelity degrade: unlike the tree parsers it also matches
tokens inside comments, scripts and CDATA.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from bs4 import BeautifulSoup

from core.logging import get_logger

logger = get_logger(__name__)

Markup = Union[str, bytes]

UTF8_BOM = "\ufeff"


def _as_text(markup: Markup) -> str:
    if isinstance(markup, bytes):
        return markup.decode("utf-8", errors="replace")
    return markup


def _parse_plain(markup: Markup) -> BeautifulSoup:
    return BeautifulSoup(markup, "lxml")


def _parse_declared_utf8(markup: Markup) -> BeautifulSoup:
    if isinstance(markup, str):
        markup = markup.encode("utf-8", errors="replace")
    return BeautifulSoup(markup, "lxml", from_encoding="utf-8")


def _parse_bom_stripped(markup: Markup) -> BeautifulSoup:
    return BeautifulSoup(_as_text(markup).lstrip(UTF8_BOM), "html.parser")


def _tree_counter(parse: Callable[[Markup], BeautifulSoup]) -> Callable[[Markup, str], Optional[int]]:
    """Wrap a tree parser: None when the parser yields an empty document."""

    def count(markup: Markup, tag_name: str) -> Optional[int]:
        soup = parse(markup)
        if soup is None or not soup.contents:
            return None
        return len(soup.find_all(tag_name))

    return count


def opening_tag_pattern(tag_name: str) -> "re.Pattern[str]":
    """Matches <tag>, <tag attr=...>, <tag/> and <tag />, never </tag>."""
    return re.compile(r"<" + re.escape(tag_name) + r"(?:[\s/][^>]*)?>", re.IGNORECASE)


def count_with_regex(markup: Markup, tag_name: str) -> int:
    return len(opening_tag_pattern(tag_name).findall(_as_text(markup)))


@dataclass(frozen=True)
class CountStrategy:
    """A counting strategy returns a count, or None when it cannot handle the markup."""

    name: str
    count: Callable[[Markup, str], Optional[int]]


REGEX_STRATEGY = CountStrategy("regex", count_with_regex)

DEFAULT_STRATEGIES: List[CountStrategy] = [
    CountStrategy("lxml", _tree_counter(_parse_plain)),
    CountStrategy("lxml-utf8", _tree_counter(_parse_declared_utf8)),
    CountStrategy("html.parser-bom-stripped", _tree_counter(_parse_bom_stripped)),
    REGEX_STRATEGY,
]


class TagCounter:
    """Counts occurrences of an HTML tag. Never raises."""

    def __init__(self, strategies: Optional[List[CountStrategy]] = None):
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)
        if not self.strategies or self.strategies[-1] is not REGEX_STRATEGY:
            self.strategies.append(REGEX_STRATEGY)

    def count(self, markup: Markup, tag_name: str) -> int:
        tag_name = tag_name.strip().lower()
        if not tag_name or not markup:
            return 0

        for strategy in self.strategies:
            try:
                result = strategy.count(markup, tag_name)
            except Exception as exc:
                logger.debug("Count strategy failed", strategy=strategy.name, error=str(exc))
                continue
            if result is not None:
                if strategy is REGEX_STRATEGY:
                    logger.info("Fell back to regex tag counting", tag=tag_name)
                else:
                    logger.debug("Counted tag", strategy=strategy.name, tag=tag_name, count=result)
                return result
        return 0
