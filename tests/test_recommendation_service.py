"""
Tests for RecommendationService against an in-memory MongoDB.
"""

import unittest
from unittest.mock import MagicMock
from datetime import datetime, timedelta, timezone
import sys
import os

import mongomock
from pymongo.errors import PyMongoError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recommendation_service import RecommendationService, RecommendationError, MovieNotFoundError


class ServiceTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.service = RecommendationService(self.db)
        self.user = "user-1"

    def add_movie(self, title, genres, year, average_rating=0, rating_count=0, popularity=0):
        result = self.db["movie"].insert_one({
            "title": title,
            "genres": genres,
            "release_year": year,
            "average_rating": average_rating,
            "rating_count": rating_count,
            "popularity": popularity,
        })
        return str(result.inserted_id)

    def add_review(self, movie_id, rating, user_id=None, updated_at=None):
        self.db["review"].insert_one({
            "user_id": user_id or self.user,
            "movie_id": movie_id,
            "rating": rating,
            "updated_at": updated_at or datetime.now(timezone.utc),
        })

    def add_watchlist(self, movie_id, status, rating=None, user_id=None, updated_at=None):
        self.db["watchlistitem"].insert_one({
            "user_id": user_id or self.user,
            "movie_id": movie_id,
            "status": status,
            "rating": rating,
            "updated_at": updated_at or datetime.now(timezone.utc),
        })

    @staticmethod
    def ids(movies):
        return [m["_id"] for m in movies]


class TestPersonalizedRecommendations(ServiceTestCase):

    async def test_excludes_rated_movies(self):
        reviewed = self.add_movie("Reviewed", ["Drama"], 2010, 8)
        completed = self.add_movie("Completed", ["Drama"], 2011, 8)
        planned = self.add_movie("Planned", ["Drama"], 2012, 8)
        other_user = self.add_movie("Other", ["Drama"], 2013, 8)
        self.add_review(reviewed, 9)
        self.add_watchlist(completed, "COMPLETED", 7)
        self.add_watchlist(planned, "PLANNED")
        self.add_review(other_user, 3, user_id="someone-else")

        result = await self.service.personalized_recommendations(self.user, 10)

        self.assertNotIn(reviewed, self.ids(result))
        self.assertNotIn(completed, self.ids(result))
        self.assertIn(planned, self.ids(result))
        self.assertIn(other_user, self.ids(result))

    async def test_default_rating_floor(self):
        low = self.add_movie("Low", ["Drama"], 2010, 5.9)
        edge = self.add_movie("Edge", ["Drama"], 2010, 6.0)

        result = await self.service.personalized_recommendations(self.user, 10)

        self.assertEqual(self.ids(result), [edge])
        self.assertNotIn(low, self.ids(result))

    async def test_stored_rating_floor(self):
        self.add_movie("Good", ["Drama"], 2010, 7)
        great = self.add_movie("Great", ["Drama"], 2010, 8.5)
        self.db["userpreferences"].insert_one({
            "user_id": self.user, "favorite_genres": [], "preferred_years": [], "min_rating": 8,
        })

        result = await self.service.personalized_recommendations(self.user, 10)

        self.assertEqual(self.ids(result), [great])
        for movie in result:
            self.assertGreaterEqual(movie["average_rating"], 8)

    async def test_ranks_by_affinity_and_keeps_ties_in_order(self):
        seen = self.add_movie("Seen", ["Drama"], 2010, 9)
        self.add_review(seen, 10)
        b = self.add_movie("B", ["Comedy"], 1990, 9)
        a = self.add_movie("A", ["Drama"], 2010, 7)
        c = self.add_movie("C", ["Comedy"], 1990, 9)

        result = await self.service.personalized_recommendations(self.user, 10)
        self.assertEqual(self.ids(result), [a, b, c])

        result = await self.service.personalized_recommendations(self.user, 2)
        self.assertEqual(self.ids(result), [a, b])

    async def test_favorite_genre_boost(self):
        comedy = self.add_movie("Comedy", ["Comedy"], 2000, 7)
        drama = self.add_movie("Drama", ["Drama"], 2000, 7)
        self.db["userpreferences"].insert_one({
            "user_id": self.user, "favorite_genres": ["Drama"], "preferred_years": [], "min_rating": 6,
        })

        result = await self.service.personalized_recommendations(self.user, 10)
        self.assertEqual(self.ids(result), [drama, comedy])

    async def test_results_are_plain_documents(self):
        self.add_movie("Any", ["Drama"], 2010, 7)

        result = await self.service.personalized_recommendations(self.user, 10)

        self.assertEqual(len(result), 1)
        self.assertIsInstance(result[0]["_id"], str)
        self.assertNotIn("score", result[0])

    async def test_candidate_pool_is_capped(self):
        for i in range(120):
            self.add_movie(f"Movie {i}", ["Drama"], 2000, 7)

        result = await self.service.personalized_recommendations(self.user, 500)
        self.assertEqual(len(result), 100)

    async def test_storage_failure_is_wrapped(self):
        database = MagicMock()
        database.__getitem__.return_value.find.side_effect = PyMongoError("connection reset")
        database.__getitem__.return_value.find_one.side_effect = PyMongoError("connection reset")
        service = RecommendationService(database)

        with self.assertRaises(RecommendationError) as ctx:
            await service.personalized_recommendations(self.user, 10)
        self.assertEqual(str(ctx.exception), "Failed to get recommendations")
        self.assertIsInstance(ctx.exception.__cause__, PyMongoError)


class TestSimilarMovies(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.reference = self.add_movie("Reference", ["Drama", "Crime"], 2000, 8)

    async def test_never_returns_reference(self):
        self.add_movie("Twin", ["Drama", "Crime"], 2000, 8)

        result = await self.service.similar_movies(self.reference, 10)

        self.assertEqual(len(result), 1)
        self.assertNotIn(self.reference, self.ids(result))

    async def test_filters_and_orders_candidates(self):
        close = self.add_movie("Close", ["Drama", "Crime"], 2001, 8)
        partial = self.add_movie("Partial", ["Drama"], 2000, 8)
        self.add_movie("Unrelated", ["Comedy"], 2000, 8)
        self.add_movie("Weak", ["Drama", "Crime"], 2000, 6.3)

        result = await self.service.similar_movies(self.reference, 10)
        self.assertEqual(self.ids(result), [close, partial])

    async def test_respects_limit(self):
        for i in range(6):
            self.add_movie(f"Drama {i}", ["Drama"], 2000 + i, 8)

        result = await self.service.similar_movies(self.reference, 3)
        self.assertEqual(len(result), 3)

    async def test_unknown_movie(self):
        with self.assertRaises(MovieNotFoundError):
            await self.service.similar_movies("64b7f0c2a1b2c3d4e5f60718", 10)
        with self.assertRaises(MovieNotFoundError):
            await self.service.similar_movies("not-an-id", 10)

    async def test_reference_without_genres(self):
        bare = self.add_movie("Bare", [], 2000, 8)

        result = await self.service.similar_movies(bare, 10)
        self.assertEqual(result, [])

    async def test_storage_failure_is_wrapped(self):
        database = MagicMock()
        database.__getitem__.return_value.find_one.side_effect = PyMongoError("timeout")
        service = RecommendationService(database)

        with self.assertRaises(RecommendationError) as ctx:
            await service.similar_movies(self.reference, 10)
        self.assertNotIsInstance(ctx.exception, MovieNotFoundError)
        self.assertEqual(str(ctx.exception), "Failed to get similar movies")


class TestTrendingMovies(ServiceTestCase):

    async def test_thresholds_and_order(self):
        t1 = self.add_movie("T1", ["Drama"], 2000, 8, rating_count=10, popularity=1)
        t2 = self.add_movie("T2", ["Drama"], 2000, 8, rating_count=10, popularity=5)
        t3 = self.add_movie("T3", ["Drama"], 2000, 9, rating_count=5)
        t4 = self.add_movie("T4", ["Drama"], 2000, 8, rating_count=20)
        self.add_movie("Too low", ["Drama"], 2000, 6.9, rating_count=100)
        self.add_movie("Too few", ["Drama"], 2000, 9.5, rating_count=4)

        result = await self.service.trending_movies(10)

        self.assertEqual(self.ids(result), [t3, t4, t2, t1])
        for movie in result:
            self.assertGreaterEqual(movie["average_rating"], 7.0)
            self.assertGreaterEqual(movie["rating_count"], 5)

    async def test_limit(self):
        for i in range(5):
            self.add_movie(f"T{i}", ["Drama"], 2000, 8, rating_count=10)

        self.assertEqual(len(await self.service.trending_movies(2)), 2)
        self.assertEqual(await self.service.trending_movies(0), [])

    async def test_storage_failure_is_wrapped(self):
        database = MagicMock()
        database.__getitem__.return_value.find.side_effect = PyMongoError("down")
        service = RecommendationService(database)

        with self.assertRaises(RecommendationError) as ctx:
            await service.trending_movies(10)
        self.assertEqual(str(ctx.exception), "Failed to get trending movies")


class TestRefreshUserPreferences(ServiceTestCase):

    async def test_learns_from_activity(self):
        m1 = self.add_movie("M1", ["Drama"], 2010, 8)
        m2 = self.add_movie("M2", ["Drama", "Action"], 2015, 8)
        self.add_review(m1, 8)
        self.add_watchlist(m2, "COMPLETED", 6)

        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["user_id"], self.user)
        self.assertEqual(preferences["favorite_genres"], ["Drama", "Action"])
        self.assertEqual(sorted(preferences["preferred_years"]), [2010, 2015])
        self.assertEqual(preferences["min_rating"], 7)
        self.assertEqual(self.db["userpreferences"].count_documents({"user_id": self.user}), 1)

    async def test_idempotent(self):
        m1 = self.add_movie("M1", ["Drama"], 2010, 8)
        self.add_review(m1, 9)

        first = await self.service.refresh_user_preferences(self.user)
        second = await self.service.refresh_user_preferences(self.user)

        for key in ("_id", "user_id", "favorite_genres", "preferred_years", "min_rating"):
            self.assertEqual(first[key], second[key])
        self.assertEqual(self.db["userpreferences"].count_documents({}), 1)

    async def test_overwrites_existing_lists(self):
        self.db["userpreferences"].insert_one({
            "user_id": self.user, "favorite_genres": ["Horror", "Western"],
            "preferred_years": [1970], "min_rating": 2,
        })
        m1 = self.add_movie("M1", ["Drama"], 2010, 8)
        self.add_review(m1, 9)

        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["favorite_genres"], ["Drama"])
        self.assertEqual(preferences["preferred_years"], [2010])
        self.assertEqual(preferences["min_rating"], 9)

    async def test_without_activity(self):
        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["favorite_genres"], [])
        self.assertEqual(preferences["preferred_years"], [])
        self.assertEqual(preferences["min_rating"], 5)

    async def test_only_recent_reviews_count(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(10):
            movie_id = self.add_movie(f"Old {i}", ["Western"], 1960, 5)
            self.add_review(movie_id, 2, updated_at=start + timedelta(minutes=i))
        for i in range(50):
            movie_id = self.add_movie(f"New {i}", ["Drama"], 2020, 8)
            self.add_review(movie_id, 10, updated_at=start + timedelta(days=1, minutes=i))

        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["favorite_genres"], ["Drama"])
        self.assertEqual(preferences["min_rating"], 10)

    async def test_only_recent_watchlist_entries_count(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(10):
            movie_id = self.add_movie(f"Old {i}", ["Western"], 1960, 5)
            self.add_watchlist(movie_id, "COMPLETED", 2, updated_at=start + timedelta(minutes=i))
        for i in range(50):
            movie_id = self.add_movie(f"New {i}", ["Drama"], 2020, 8)
            self.add_watchlist(movie_id, "COMPLETED", 9, updated_at=start + timedelta(days=1, minutes=i))

        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["favorite_genres"], ["Drama"])
        self.assertEqual(preferences["preferred_years"], [2020])
        self.assertEqual(preferences["min_rating"], 9)

    async def test_skips_unfinished_and_unrated_entries(self):
        for status, rating in (("PLANNED", 9), ("IN_PROGRESS", 9), ("DROPPED", 1), ("COMPLETED", None)):
            self.add_watchlist(self.add_movie(status, ["Horror"], 1980, 7), status, rating)
        self.add_watchlist(self.add_movie("Finished", ["Drama"], 2010, 7), "COMPLETED", 8)

        preferences = await self.service.refresh_user_preferences(self.user)

        self.assertEqual(preferences["favorite_genres"], ["Drama"])
        self.assertEqual(preferences["preferred_years"], [2010])
        self.assertEqual(preferences["min_rating"], 8)

    async def test_storage_failure_is_wrapped(self):
        database = MagicMock()
        database.__getitem__.return_value.find.side_effect = PyMongoError("down")
        service = RecommendationService(database)

        with self.assertRaises(RecommendationError) as ctx:
            await service.refresh_user_preferences(self.user)
        self.assertEqual(str(ctx.exception), "Failed to update user preferences")


if __name__ == '__main__':
    unittest.main()
