import os
import re
import logging
from typing import Optional, List, Literal
from fastapi import FastAPI, HTTPException, Query, Depends, Response
from fastapi.middleware.cors import CORSMiddleware
import requests
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import (
    db, create_document, get_documents, upsert_document, ensure_indexes,
    serialize, to_object_id, now,
)
from schemas import Movie, MovieImport, WatchlistItem, WatchlistUpdate, Review, UserPreferences
from recommendation_service import RecommendationService, RecommendationError, MovieNotFoundError

TMDB_API_KEY = os.getenv("TMDB_API_KEY")
TMDB_BASE = "https://api.themoviedb.org/3"
IMG_W500 = "https://image.tmdb.org/t/p/w500"
IMG_ORIGINAL = "https://image.tmdb.org/t/p/original"

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Moviesque API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if db is not None:
    ensure_indexes(db)


# ---------------------- Helpers ----------------------

def get_database():
    return db


def require_db(database):
    if database is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database


def get_recommendation_service(database=Depends(get_database)) -> RecommendationService:
    return RecommendationService(require_db(database))


def tmdb_get(path: str, params: Optional[dict] = None):
    if not TMDB_API_KEY:
        raise HTTPException(status_code=500, detail="TMDB_API_KEY is not set in environment")
    url = f"{TMDB_BASE}{path}"
    qp = {"api_key": TMDB_API_KEY, "language": "en-US"}
    if params:
        qp.update(params)
    try:
        r = requests.get(url, params=qp, timeout=12)
    except requests.RequestException as e:
        logger.error("TMDb request to %s failed: %s", path, e)
        raise HTTPException(status_code=502, detail="TMDb is unreachable")
    if not r.ok:
        raise HTTPException(status_code=r.status_code, detail=r.text)
    return r.json()


def map_movie(item):
    date = item.get("release_date")
    return {
        "tmdb_id": item.get("id"),
        "imdb_id": item.get("imdb_id"),
        "title": item.get("title"),
        "overview": item.get("overview"),
        "poster": f"{IMG_W500}{item['poster_path']}" if item.get("poster_path") else None,
        "backdrop": f"{IMG_ORIGINAL}{item['backdrop_path']}" if item.get("backdrop_path") else None,
        "release_year": int(date.split("-")[0]) if date else None,
        # Details carry genre objects, list endpoints only genre ids
        "genres": [g.get("name") for g in item.get("genres", [])],
        "genre_ids": item.get("genre_ids", []),
        "runtime": item.get("runtime"),
        "average_rating": item.get("vote_average") or 0,
        "rating_count": item.get("vote_count") or 0,
        "popularity": item.get("popularity") or 0,
    }


def map_page(data):
    return {
        "results": [map_movie(x) for x in data.get("results", [])],
        "page": data.get("page"),
        "total_pages": data.get("total_pages"),
        "total_results": data.get("total_results"),
    }


def find_movie(database, movie_id: str):
    oid = to_object_id(movie_id)
    movie = database["movie"].find_one({"_id": oid}) if oid is not None else None
    if movie is None:
        raise HTTPException(status_code=404, detail="Movie not found")
    return movie


def find_owned(database, collection: str, item_id: str, user_id: str, label: str):
    oid = to_object_id(item_id)
    item = database[collection].find_one({"_id": oid}) if oid is not None else None
    if item is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if item["user_id"] != user_id:
        raise HTTPException(status_code=403, detail=f"Not authorized to modify this {label.lower()}")
    return item


def pagination(page: int, limit: int, total: int):
    return {
        "page": page,
        "limit": limit,
        "total_count": total,
        "total_pages": (total + limit - 1) // limit,
    }


def update_movie_rating(database, movie_id: str):
    """Recompute a movie's average rating and count from its reviews."""
    ratings = [r["rating"] for r in database["review"].find({"movie_id": movie_id}, {"rating": 1})]
    average = sum(ratings) / len(ratings) if ratings else 0
    database["movie"].update_one(
        {"_id": to_object_id(movie_id)},
        {"$set": {"average_rating": average, "rating_count": len(ratings), "updated_at": now()}},
    )


# ---------------------- Base Endpoints ----------------------

@app.get("/")
def read_root():
    return {"message": "Moviesque backend is running"}

@app.get("/api/hello")
def hello():
    return {"message": "Hello from Moviesque API"}

@app.get("/test")
def test_database(database=Depends(get_database)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    if database is None:
        return response
    try:
        response["collections"] = database.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ---------------------- TMDb Proxy Endpoints ----------------------

@app.get("/api/tmdb/search")
def tmdb_search(q: str = Query(..., min_length=1), page: int = Query(1, ge=1)):
    data = tmdb_get("/search/movie", params={"query": q, "page": page, "include_adult": False})
    return map_page(data)

@app.get("/api/tmdb/popular")
def tmdb_popular(page: int = Query(1, ge=1)):
    data = tmdb_get("/movie/popular", params={"page": page, "include_adult": False})
    return map_page(data)

@app.get("/api/tmdb/discover")
def tmdb_discover(genre_id: int, page: int = Query(1, ge=1)):
    data = tmdb_get("/discover/movie", params={"with_genres": genre_id, "page": page, "include_adult": False})
    return map_page(data)

@app.get("/api/tmdb/genres")
def tmdb_genres():
    data = tmdb_get("/genre/movie/list")
    return {"results": data.get("genres", [])}


# ---------------------- Catalogue Endpoints ----------------------

SortField = Literal["created_at", "title", "release_year", "average_rating", "rating_count", "popularity"]

@app.get("/api/movies")
def list_movies(
    search: Optional[str] = None,
    genre: Optional[List[str]] = Query(None),
    year: Optional[int] = None,
    min_rating: Optional[float] = Query(None, ge=0, le=10),
    max_rating: Optional[float] = Query(None, ge=0, le=10),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: SortField = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    database=Depends(get_database),
):
    require_db(database)
    filt = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"title": pattern}, {"overview": pattern}]
    if genre:
        filt["genres"] = {"$all": genre}
    if year:
        filt["release_year"] = year
    rating = {}
    if min_rating is not None:
        rating["$gte"] = min_rating
    if max_rating is not None:
        rating["$lte"] = max_rating
    if rating:
        filt["average_rating"] = rating

    direction = ASCENDING if sort_order == "asc" else DESCENDING
    items = get_documents(database, "movie", filt, sort=[(sort_by, direction)],
                          skip=(page - 1) * limit, limit=limit)
    total = database["movie"].count_documents(filt)
    return {"results": items, "pagination": pagination(page, limit, total)}

@app.get("/api/movies/{movie_id}")
def get_movie(movie_id: str, database=Depends(get_database)):
    require_db(database)
    movie = serialize(find_movie(database, movie_id))
    movie["reviews"] = get_documents(database, "review", {"movie_id": movie_id},
                                     sort=[("created_at", DESCENDING)])
    return movie

@app.post("/api/movies", status_code=201)
def create_movie(payload: Movie, database=Depends(get_database)):
    require_db(database)
    inserted_id = create_document(database, "movie", payload)
    return {"id": inserted_id, "status": "ok"}

@app.post("/api/movies/import", status_code=201)
def import_movie(payload: MovieImport, database=Depends(get_database)):
    require_db(database)
    if database["movie"].find_one({"tmdb_id": payload.tmdb_id}):
        raise HTTPException(status_code=400, detail="Movie already exists")
    data = tmdb_get(f"/movie/{payload.tmdb_id}")
    fields = map_movie(data)
    fields.pop("genre_ids")
    inserted_id = create_document(database, "movie", Movie(**fields))
    logger.info("Imported TMDb movie %s as %s", payload.tmdb_id, inserted_id)
    return {"id": inserted_id, "status": "ok"}


# ---------------------- Watchlist Endpoints ----------------------

@app.get("/api/watchlist")
def get_watchlist(user_id: str, status: Optional[str] = None, database=Depends(get_database)):
    require_db(database)
    filt = {"user_id": user_id}
    if status:
        filt["status"] = status
    return {"results": get_documents(database, "watchlistitem", filt, sort=[("created_at", DESCENDING)])}

@app.post("/api/watchlist", status_code=201)
def add_watchlist_item(payload: WatchlistItem, database=Depends(get_database)):
    require_db(database)
    find_movie(database, payload.movie_id)
    if database["watchlistitem"].find_one({"user_id": payload.user_id, "movie_id": payload.movie_id}):
        raise HTTPException(status_code=400, detail="Movie already in watchlist")
    try:
        inserted_id = create_document(database, "watchlistitem", payload)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Movie already in watchlist")
    return {"id": inserted_id, "status": "ok"}

@app.patch("/api/watchlist/{item_id}")
def update_watchlist_item(item_id: str, user_id: str, payload: WatchlistUpdate, database=Depends(get_database)):
    require_db(database)
    item = find_owned(database, "watchlistitem", item_id, user_id, "Item")
    update_data = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not update_data:
        return {"status": "no-op"}
    update_data["updated_at"] = now()
    database["watchlistitem"].update_one({"_id": item["_id"]}, {"$set": update_data})
    return {"status": "ok"}

@app.delete("/api/watchlist/{item_id}")
def delete_watchlist_item(item_id: str, user_id: str, database=Depends(get_database)):
    require_db(database)
    item = find_owned(database, "watchlistitem", item_id, user_id, "Item")
    database["watchlistitem"].delete_one({"_id": item["_id"]})
    return {"status": "ok"}


# ---------------------- Review Endpoints ----------------------

@app.post("/api/reviews", status_code=201)
def create_or_update_review(payload: Review, response: Response, database=Depends(get_database)):
    require_db(database)
    find_movie(database, payload.movie_id)
    key = {"user_id": payload.user_id, "movie_id": payload.movie_id}
    if database["review"].find_one(key) is not None:
        response.status_code = 200
    review = upsert_document(database, "review", key, {"rating": payload.rating, "content": payload.content})
    update_movie_rating(database, payload.movie_id)
    return {"status": "ok", "review": serialize(review)}

@app.get("/api/reviews/movie/{movie_id}")
def get_movie_reviews(movie_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      database=Depends(get_database)):
    require_db(database)
    filt = {"movie_id": movie_id}
    items = get_documents(database, "review", filt, sort=[("created_at", DESCENDING)],
                          skip=(page - 1) * limit, limit=limit)
    total = database["review"].count_documents(filt)
    return {"results": items, "pagination": pagination(page, limit, total)}

@app.get("/api/reviews/user")
def get_user_reviews(user_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     database=Depends(get_database)):
    require_db(database)
    filt = {"user_id": user_id}
    items = get_documents(database, "review", filt, sort=[("created_at", DESCENDING)],
                          skip=(page - 1) * limit, limit=limit)
    ids = [oid for oid in (to_object_id(r["movie_id"]) for r in items) if oid is not None]
    movies = {
        str(m["_id"]): {"_id": str(m["_id"]), "title": m.get("title"), "poster": m.get("poster"),
                        "release_year": m.get("release_year")}
        for m in database["movie"].find({"_id": {"$in": ids}})
    }
    for r in items:
        r["movie"] = movies.get(r["movie_id"])
    total = database["review"].count_documents(filt)
    return {"results": items, "pagination": pagination(page, limit, total)}

@app.get("/api/reviews/movie/{movie_id}/mine")
def get_user_movie_review(movie_id: str, user_id: str, database=Depends(get_database)):
    require_db(database)
    review = database["review"].find_one({"user_id": user_id, "movie_id": movie_id})
    return {"review": serialize(review)}

@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user_id: str, database=Depends(get_database)):
    require_db(database)
    review = find_owned(database, "review", review_id, user_id, "Review")
    database["review"].delete_one({"_id": review["_id"]})
    update_movie_rating(database, review["movie_id"])
    return {"status": "ok"}


# ---------------------- Recommendation Endpoints ----------------------

@app.get("/api/recommendations/personalized")
async def personalized_recommendations(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        return {"results": await service.personalized_recommendations(user_id, limit)}
    except RecommendationError as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.get("/api/recommendations/similar/{movie_id}")
async def similar_movies(
    movie_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        return {"results": await service.similar_movies(movie_id, limit)}
    except MovieNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecommendationError as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.get("/api/recommendations/trending")
async def trending_movies(
    limit: int = Query(10, ge=1, le=100),
    service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        return {"results": await service.trending_movies(limit)}
    except RecommendationError as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.post("/api/recommendations/preferences/update")
async def refresh_preferences(user_id: str, service: RecommendationService = Depends(get_recommendation_service)):
    try:
        return {"preferences": await service.refresh_user_preferences(user_id), "status": "ok"}
    except RecommendationError as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.get("/api/recommendations/preferences")
def get_preferences(user_id: str, database=Depends(get_database)):
    require_db(database)
    return {"preferences": serialize(database["userpreferences"].find_one({"user_id": user_id}))}

@app.post("/api/recommendations/preferences")
def set_preferences(user_id: str, payload: UserPreferences, database=Depends(get_database)):
    require_db(database)
    preferences = upsert_document(database, "userpreferences", {"user_id": user_id}, payload.model_dump())
    return {"preferences": serialize(preferences), "status": "ok"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
