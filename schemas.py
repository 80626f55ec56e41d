"""
Database Schemas

MongoDB collection schemas as Pydantic models.
These schemas are used for data validation in the application.

Each Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- Movie -> "movie" collection
- WatchlistItem -> "watchlistitem" collection
- Review -> "review" collection
- UserPreferences -> "userpreferences" collection
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal

WatchStatus = Literal["PLANNED", "IN_PROGRESS", "COMPLETED", "DROPPED"]

DEFAULT_MIN_RATING = 6.0


class Movie(BaseModel):
    """
    Catalogue entry.
    Collection name: "movie"
    """
    title: str = Field(..., description="Movie title")
    overview: Optional[str] = None
    release_year: Optional[int] = Field(None, ge=1870, le=2200, description="Release year")
    genres: List[str] = Field(default_factory=list, description="Genre labels")
    runtime: Optional[int] = Field(None, ge=0, description="Runtime in minutes")
    poster: Optional[str] = Field(None, description="Poster URL")
    backdrop: Optional[str] = Field(None, description="Backdrop URL")
    tmdb_id: Optional[int] = Field(None, description="TMDb numeric ID if imported")
    imdb_id: Optional[str] = Field(None, description="IMDB ID if available")
    average_rating: float = Field(0, ge=0, le=10, description="Average rating 0-10 scale")
    rating_count: int = Field(0, ge=0)
    popularity: float = Field(0, ge=0)


class WatchlistItem(BaseModel):
    """
    Watchlist entries for a user, one per (user_id, movie_id).
    Collection name: "watchlistitem"
    """
    user_id: str = Field(..., description="User identifier")
    movie_id: str = Field(..., description="Catalogue movie id")
    status: WatchStatus = Field("PLANNED", description="Watch status")
    rating: Optional[int] = Field(None, ge=1, le=10, description="User rating 1-10 scale")
    notes: Optional[str] = None


class WatchlistUpdate(BaseModel):
    status: Optional[WatchStatus] = None
    rating: Optional[int] = Field(None, ge=1, le=10)
    notes: Optional[str] = None


class Review(BaseModel):
    """
    User review, one per (user_id, movie_id).
    Collection name: "review"
    """
    user_id: str
    movie_id: str
    rating: int = Field(..., ge=1, le=10)
    content: Optional[str] = None


class UserPreferences(BaseModel):
    """
    Learned or user-edited recommendation preferences, one per user.
    Collection name: "userpreferences"

    Every field is defaulted; writes always replace the whole record.
    """
    favorite_genres: List[str] = Field(default_factory=list)
    preferred_years: List[int] = Field(default_factory=list)
    min_rating: float = Field(DEFAULT_MIN_RATING, ge=0, le=10)
    max_runtime: Optional[int] = Field(None, ge=0)


class MovieImport(BaseModel):
    tmdb_id: int
