"""
Recommendation service

Scores catalogue movies against a user's activity:
- personalized: genre/year affinity learned from completed watchlist
  entries, reviews and stored preferences, plus rating and popularity
- similar: genre overlap, rating closeness and release-year proximity to a
  reference movie
- trending: highly rated movies with enough votes
- refresh_user_preferences: rebuilds the stored preference record from
  recent activity

The service takes its database as a constructor argument. Reads that do not
depend on each other run concurrently in worker threads; scoring itself is
plain in-memory work on the fetched documents.
"""

import asyncio
import logging
import math
from collections import Counter, defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from database import serialize, to_object_id, upsert_document
from schemas import DEFAULT_MIN_RATING

logger = logging.getLogger(__name__)

GENRE_WEIGHT = 0.4
YEAR_WEIGHT = 0.2
RATING_WEIGHT = 0.3
POPULARITY_WEIGHT = 0.1

FAVORITE_GENRE_BOOST = 2
PREFERRED_YEAR_BOOST = 1

CANDIDATE_POOL_SIZE = 100

SIMILAR_GENRE_WEIGHT = 0.5
SIMILAR_RATING_WEIGHT = 0.3
SIMILAR_YEAR_WEIGHT = 0.2
SIMILAR_RATING_FLOOR = 0.8
YEAR_WINDOW = 20

TRENDING_MIN_RATING = 7.0
TRENDING_MIN_COUNT = 5

ACTIVITY_WINDOW = 50
TOP_PREFERENCES = 5
NEUTRAL_RATING = 5


class RecommendationError(Exception):
    pass


class MovieNotFoundError(RecommendationError):
    pass


# ---------------------- Scoring ----------------------

def _is_rated_completion(entry: dict) -> bool:
    return entry.get("status") == "COMPLETED" and bool(entry.get("rating"))


def build_affinity(watchlist: Iterable[Tuple[dict, dict]],
                   reviews: Iterable[Tuple[dict, dict]],
                   preferences: Optional[dict] = None):
    """Accumulate per-genre and per-year affinity from a user's activity.

    `watchlist` and `reviews` are (entry, movie) pairs. Returns
    (genre_affinity, year_affinity, excluded_movie_ids).
    """
    genre_affinity: Dict[str, int] = defaultdict(int)
    year_affinity: Dict[int, int] = defaultdict(int)
    excluded: Set[str] = set()

    def add(movie, rating):
        excluded.add(str(movie["_id"]))
        for genre in movie.get("genres") or []:
            genre_affinity[genre] += rating
        year = movie.get("release_year")
        if year is not None:
            year_affinity[year] += rating

    for entry, movie in watchlist:
        if _is_rated_completion(entry):
            add(movie, entry["rating"])

    for review, movie in reviews:
        add(movie, review["rating"])

    if preferences:
        for genre in preferences.get("favorite_genres") or []:
            genre_affinity[genre] += FAVORITE_GENRE_BOOST
        for year in preferences.get("preferred_years") or []:
            year_affinity[year] += PREFERRED_YEAR_BOOST

    return dict(genre_affinity), dict(year_affinity), excluded


def personalized_score(movie: dict, genre_affinity: dict, year_affinity: dict) -> float:
    genre_score = sum(genre_affinity.get(g, 0) for g in movie.get("genres") or [])
    year_score = year_affinity.get(movie.get("release_year"), 0)
    return (
        GENRE_WEIGHT * genre_score
        + YEAR_WEIGHT * year_score
        + RATING_WEIGHT * (movie.get("average_rating") or 0)
        + POPULARITY_WEIGHT * (movie.get("popularity") or 0)
    )


def similarity_score(movie: dict, reference: dict) -> float:
    reference_genres = set(reference.get("genres") or [])
    score = 0.0

    # A reference without genres contributes nothing on the genre term.
    if reference_genres:
        common = reference_genres.intersection(movie.get("genres") or [])
        score += SIMILAR_GENRE_WEIGHT * len(common) / len(reference_genres)

    rating_diff = abs((movie.get("average_rating") or 0) - (reference.get("average_rating") or 0))
    score += SIMILAR_RATING_WEIGHT * (1 - rating_diff / 10)

    year, reference_year = movie.get("release_year"), reference.get("release_year")
    if year is not None and reference_year is not None:
        year_diff = abs(year - reference_year)
        score += SIMILAR_YEAR_WEIGHT * (1 - min(year_diff / YEAR_WINDOW, 1))

    return score


def rank(movies: List[dict], score: Callable[[dict], float], limit: int) -> List[dict]:
    """Sort by descending score, keeping input order on ties, and truncate."""
    if limit <= 0:
        return []
    scored = [(score(m), i) for i, m in enumerate(movies)]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [movies[i] for _, i in scored[:limit]]


def summarize_activity(watchlist: Iterable[Tuple[dict, dict]],
                       reviews: Iterable[Tuple[dict, dict]]) -> dict:
    """Derive favorite genres, preferred years and a rating floor.

    Counts ties keep first-seen order: watchlist signals before reviews, and
    within each in the order fetched.
    """
    genre_counts: Counter = Counter()
    year_counts: Counter = Counter()
    ratings: List[int] = []

    def count(movie, rating):
        ratings.append(rating)
        for genre in movie.get("genres") or []:
            genre_counts[genre] += 1
        year = movie.get("release_year")
        if year is not None:
            year_counts[year] += 1

    for entry, movie in watchlist:
        if _is_rated_completion(entry):
            count(movie, entry["rating"])

    for review, movie in reviews:
        count(movie, review["rating"])

    average = sum(ratings) / len(ratings) if ratings else NEUTRAL_RATING
    return {
        "favorite_genres": [g for g, _ in genre_counts.most_common(TOP_PREFERENCES)],
        "preferred_years": [y for y, _ in year_counts.most_common(TOP_PREFERENCES)],
        # half-up, so 6.5 becomes 7
        "min_rating": math.floor(average + 0.5),
    }


# ---------------------- Service ----------------------

class RecommendationService:

    def __init__(self, database):
        self.db = database

    # Reads run in worker threads so independent ones can be gathered.

    def _join_movies(self, docs: List[dict]) -> List[Tuple[dict, dict]]:
        ids = [oid for oid in (to_object_id(d.get("movie_id")) for d in docs) if oid is not None]
        movies = {str(m["_id"]): m for m in self.db["movie"].find({"_id": {"$in": ids}})}
        # Entries pointing at a deleted movie carry no signal.
        return [(d, movies[d["movie_id"]]) for d in docs if d.get("movie_id") in movies]

    def _activity(self, collection: str, user_id: str, window: Optional[int] = None):
        cursor = self.db[collection].find({"user_id": user_id})
        if window:
            cursor = cursor.sort("updated_at", DESCENDING).limit(window)
        return self._join_movies(list(cursor))

    def _preferences(self, user_id: str) -> Optional[dict]:
        return self.db["userpreferences"].find_one({"user_id": user_id})

    def _find_movies(self, query: dict, sort=None, limit: int = 0) -> List[dict]:
        cursor = self.db["movie"].find(query)
        if sort:
            cursor = cursor.sort(sort)
        return list(cursor.limit(limit))

    async def personalized_recommendations(self, user_id: str, limit: int = 10) -> List[dict]:
        try:
            watchlist, reviews, preferences = await asyncio.gather(
                asyncio.to_thread(self._activity, "watchlistitem", user_id),
                asyncio.to_thread(self._activity, "review", user_id),
                asyncio.to_thread(self._preferences, user_id),
            )
            genre_affinity, year_affinity, excluded = build_affinity(watchlist, reviews, preferences)

            floor = DEFAULT_MIN_RATING
            if preferences and preferences.get("min_rating") is not None:
                floor = preferences["min_rating"]

            if limit <= 0:
                return []
            candidates = await asyncio.to_thread(
                self._find_movies,
                {
                    "_id": {"$nin": [to_object_id(i) for i in excluded]},
                    "average_rating": {"$gte": floor},
                },
                None,
                CANDIDATE_POOL_SIZE,
            )
        except PyMongoError as e:
            logger.exception("Get personalized recommendations error for user %s", user_id)
            raise RecommendationError("Failed to get recommendations") from e

        ranked = rank(candidates, lambda m: personalized_score(m, genre_affinity, year_affinity), limit)
        return [serialize(m) for m in ranked]

    async def similar_movies(self, movie_id: str, limit: int = 10) -> List[dict]:
        oid = to_object_id(movie_id)
        if oid is None:
            raise MovieNotFoundError("Movie not found")

        try:
            reference = await asyncio.to_thread(self.db["movie"].find_one, {"_id": oid})
            if reference is None:
                raise MovieNotFoundError("Movie not found")
            if limit <= 0:
                return []
            candidates = await asyncio.to_thread(
                self._find_movies,
                {
                    "_id": {"$ne": oid},
                    "genres": {"$in": reference.get("genres") or []},
                    "average_rating": {"$gte": (reference.get("average_rating") or 0) * SIMILAR_RATING_FLOOR},
                },
                None,
                limit * 2,
            )
        except PyMongoError as e:
            logger.exception("Get similar movies error for movie %s", movie_id)
            raise RecommendationError("Failed to get similar movies") from e

        ranked = rank(candidates, lambda m: similarity_score(m, reference), limit)
        return [serialize(m) for m in ranked]

    async def trending_movies(self, limit: int = 10) -> List[dict]:
        if limit <= 0:
            return []
        try:
            movies = await asyncio.to_thread(
                self._find_movies,
                {
                    "average_rating": {"$gte": TRENDING_MIN_RATING},
                    "rating_count": {"$gte": TRENDING_MIN_COUNT},
                },
                [("average_rating", DESCENDING), ("rating_count", DESCENDING), ("popularity", DESCENDING)],
                limit,
            )
        except PyMongoError as e:
            logger.exception("Get trending movies error")
            raise RecommendationError("Failed to get trending movies") from e
        return [serialize(m) for m in movies]

    async def refresh_user_preferences(self, user_id: str) -> dict:
        try:
            watchlist, reviews = await asyncio.gather(
                asyncio.to_thread(self._activity, "watchlistitem", user_id, ACTIVITY_WINDOW),
                asyncio.to_thread(self._activity, "review", user_id, ACTIVITY_WINDOW),
            )
            summary = summarize_activity(watchlist, reviews)
            preferences = await asyncio.to_thread(
                upsert_document, self.db, "userpreferences", {"user_id": user_id}, summary
            )
        except PyMongoError as e:
            logger.exception("Update user preferences error for user %s", user_id)
            raise RecommendationError("Failed to update user preferences") from e

        logger.info(
            "Refreshed preferences for user %s: genres=%s years=%s min_rating=%s",
            user_id, summary["favorite_genres"], summary["preferred_years"], summary["min_rating"],
        )
        return serialize(preferences)
