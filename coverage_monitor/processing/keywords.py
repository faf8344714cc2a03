"""Keyword filter: global blacklist and per-client whitelist matching."""

from collections import defaultdict
from dataclasses import dataclass

from ..logging import get_logger
from ..records import CoverageKeyword, Game, KeywordType
from .text_utils import contains_term, matching_terms

logger = get_logger(__name__)


@dataclass
class ClientMatch:
    """Client/game assignment for a candidate."""
    client_id: str | None
    game_id: str | None
    matched_terms: list[str]


class KeywordFilter:
    """Blacklist rejection and whitelist lookup over a keyword snapshot.

    The blacklist applies to every candidate regardless of client. Whitelist
    terms never reject anything; they only feed scoring and client resolution.
    """

    def __init__(self, keywords: list[CoverageKeyword], games: list[Game]):
        self.blacklist: list[str] = []
        self.whitelist_by_client: dict[str, list[str]] = defaultdict(list)
        self.whitelist_by_game: dict[str, list[str]] = defaultdict(list)
        self.games = games
        self.games_by_id = {g.id: g for g in games}

        for kw in keywords:
            term = kw.keyword.strip()
            if not term:
                continue
            if kw.keyword_type == KeywordType.BLACKLIST:
                self.blacklist.append(term)
            else:
                self.whitelist_by_client[kw.client_id].append(term)
                if kw.game_id:
                    self.whitelist_by_game[kw.game_id].append(term)

        logger.debug(
            "Keyword filter loaded",
            blacklist=len(self.blacklist),
            clients=len(self.whitelist_by_client),
        )

    def blacklist_hit(self, text: str) -> str | None:
        """Return the first blacklist term found in text, if any."""
        for term in self.blacklist:
            if contains_term(text, term):
                return term
        return None

    def is_blacklisted(self, text: str) -> bool:
        return self.blacklist_hit(text) is not None

    def whitelist_matches(self, text: str, client_id: str | None) -> list[str]:
        if not client_id:
            return []
        return matching_terms(text, self.whitelist_by_client.get(client_id, []))

    def resolve_client(self, text: str, game_id: str | None = None) -> ClientMatch:
        """Assign client and game to a candidate.

        A source bound to a game decides the client. Otherwise the client with
        the most whitelist hits wins, and its game whose name occurs in the
        text (if any) becomes the game.
        """
        if game_id and game_id in self.games_by_id:
            game = self.games_by_id[game_id]
            return ClientMatch(
                client_id=game.client_id,
                game_id=game.id,
                matched_terms=self.whitelist_matches(text, game.client_id),
            )

        best: ClientMatch = ClientMatch(client_id=None, game_id=None, matched_terms=[])
        for client_id, terms in self.whitelist_by_client.items():
            hits = matching_terms(text, terms)
            if len(hits) > len(best.matched_terms):
                best = ClientMatch(client_id=client_id, game_id=None, matched_terms=hits)

        if best.client_id:
            for game in self.games:
                if game.client_id == best.client_id and contains_term(text, game.name):
                    best.game_id = game.id
                    break

        return best
