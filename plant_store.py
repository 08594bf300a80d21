# plant_store.py
import logging
import re
from typing import List, Optional, Protocol

import aiohttp
import asyncpg
from pydantic import BaseModel

from schemas import (
    CatalogStats,
    CategoryCreate,
    CategoryUpdate,
    Plant,
    PlantCategory,
    PlantCreate,
    PlantPage,
    PlantUpdate,
    SubjectRecord,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_LOOKUP_WORDS = 8
MIN_WORD_LEN = 4
LOOKUP_COLUMNS = ("id", "name", "scientific_name", "description", "medicinal_uses", "how_to_use")

# words too generic to identify a plant by name
STOPWORDS = {
    "about", "does", "from", "give", "good", "have", "help", "helps", "information",
    "into", "more", "plant", "plants", "some", "tell", "than", "that", "their",
    "there", "this", "used", "uses", "what", "when", "where", "which", "with", "your",
}

_word_rx = re.compile(r"[^\W\d_]+")


async def create_pool(database_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn=database_url, min_size=1, max_size=5)


def candidate_words(query: str) -> List[str]:
    """Lowercased words of the query worth matching against plant names, in order."""
    words = []
    for w in _word_rx.findall(query.lower()):
        if len(w) < MIN_WORD_LEN or w in STOPWORDS or w in words:
            continue
        words.append(w)
        if len(words) >= MAX_LOOKUP_WORDS:
            break
    return words


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _clamp(limit: int) -> int:
    return max(1, min(int(limit), MAX_PAGE_SIZE))


# =========================
#   Subject resolution
# =========================
class SubjectResolver(Protocol):
    async def resolve(self, query_text: str, authorization: Optional[str] = None) -> Optional[SubjectRecord]:
        ...


class PostgresSubjectResolver:
    """
    First plant whose name contains a word of the query. Earlier words
    win; ties go to the first name alphabetically. One round trip.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def resolve(self, query_text: str, authorization: Optional[str] = None) -> Optional[SubjectRecord]:
        words = candidate_words(query_text)
        if not words:
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {', '.join('p.' + c for c in LOOKUP_COLUMNS)}, w.pos FROM plants p "
                "JOIN unnest($1::text[]) WITH ORDINALITY AS w(pattern, pos) ON p.name ILIKE w.pattern "
                "ORDER BY w.pos, p.name LIMIT 1",
                [f"%{_escape_like(w)}%" for w in words],
            )
        if not row:
            return None
        logger.info(f"[resolve] matched '{words[row['pos'] - 1]}' -> {row['name']}")
        return Plant.model_validate(dict(row)).to_subject()


class SupabaseSubjectResolver:
    """Same lookup through the Supabase REST (PostgREST) endpoint, as the caller."""

    def __init__(self, url: str, api_key: str, timeout: float = 5.0):
        self.endpoint = url.rstrip("/") + "/rest/v1/plants"
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self, authorization: Optional[str]) -> dict:
        return {
            "apikey": self.api_key,
            "Authorization": authorization or f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def resolve(self, query_text: str, authorization: Optional[str] = None) -> Optional[SubjectRecord]:
        words = candidate_words(query_text)
        if not words:
            return None
        params = {
            "select": ",".join(LOOKUP_COLUMNS),
            "or": "(" + ",".join(f"name.ilike.*{w}*" for w in words) + ")",
            "order": "name",
            "limit": str(MAX_PAGE_SIZE),
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout, headers=self._headers(authorization)) as session:
            async with session.get(self.endpoint, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"[resolve] supabase status={resp.status} body[:200]={body[:200]}")
                    resp.raise_for_status()
                rows = await resp.json()

        # rows come back by name; pick by word order
        for word in words:
            for row in rows:
                if word in str(row.get("name", "")).lower():
                    logger.info(f"[resolve] matched '{word}' -> {row['name']}")
                    return Plant.model_validate(row).to_subject()
        return None


# =========================
#   Catalog
# =========================
class PlantCatalog:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def list_plants(
        self,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 12,
        offset: int = 0,
    ) -> PlantPage:
        """
        One page of plants ordered by name. `count` is the number of rows
        matching the same filters.
        """
        conditions, args = [], []
        if category_id is not None:
            args.append(category_id)
            conditions.append(f"p.category_id = ${len(args)}")
        if search and search.strip():
            args.append(f"%{_escape_like(search.strip())}%")
            n = len(args)
            conditions.append(
                f"(p.name ILIKE ${n} OR p.scientific_name ILIKE ${n} "
                f"OR p.description ILIKE ${n} OR p.medicinal_uses ILIKE ${n})"
            )
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        page_args = args + [_clamp(limit), max(0, int(offset))]

        async with self.pool.acquire() as conn:
            count = await conn.fetchval(f"SELECT count(*) FROM plants p{where}", *args)
            rows = await conn.fetch(
                "SELECT p.*, c.name AS category_name FROM plants p "
                f"LEFT JOIN plant_categories c ON c.id = p.category_id{where} "
                f"ORDER BY p.name LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                *page_args,
            )
        return PlantPage(plants=[Plant.model_validate(dict(r)) for r in rows], count=count or 0)

    async def get_plant(self, plant_id: int) -> Optional[Plant]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT p.*, c.name AS category_name FROM plants p "
                "LEFT JOIN plant_categories c ON c.id = p.category_id WHERE p.id = $1",
                plant_id,
            )
        return Plant.model_validate(dict(row)) if row else None

    async def list_categories(self) -> List[PlantCategory]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT id, name, description FROM plant_categories ORDER BY name")
        return [PlantCategory.model_validate(dict(r)) for r in rows]

    async def featured_plants(self, limit: int = 6) -> List[Plant]:
        """Most recently added plants."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT p.*, c.name AS category_name FROM plants p "
                "LEFT JOIN plant_categories c ON c.id = p.category_id "
                "ORDER BY p.id DESC LIMIT $1",
                _clamp(limit),
            )
        return [Plant.model_validate(dict(r)) for r in rows]

    async def stats(self) -> CatalogStats:
        async with self.pool.acquire() as conn:
            plants = await conn.fetchval("SELECT count(*) FROM plants")
            categories = await conn.fetchval("SELECT count(*) FROM plant_categories")
        return CatalogStats(total_plants=plants or 0, total_categories=categories or 0)

    # --- writes
    async def create_category(self, data: CategoryCreate) -> PlantCategory:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO plant_categories (name, description) VALUES ($1, $2) "
                "RETURNING id, name, description",
                data.name,
                data.description,
            )
        logger.info(f"[catalog] category created id={row['id']}")
        return PlantCategory.model_validate(dict(row))

    async def update_category(self, category_id: int, data: CategoryUpdate) -> Optional[PlantCategory]:
        row = await self._update(
            "plant_categories", category_id, _changes(data, required=("name",)), "id, name, description"
        )
        return PlantCategory.model_validate(dict(row)) if row else None

    async def delete_category(self, category_id: int) -> bool:
        return await self._delete("plant_categories", category_id)

    async def create_plant(self, data: PlantCreate) -> Plant:
        fields = data.model_dump()
        columns = list(fields)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO plants ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                *fields.values(),
            )
        logger.info(f"[catalog] plant created id={row['id']} name={row['name']}")
        return Plant.model_validate(dict(row))

    async def update_plant(self, plant_id: int, data: PlantUpdate) -> Optional[Plant]:
        row = await self._update("plants", plant_id, _changes(data, required=("name", "scientific_name")), "*")
        return Plant.model_validate(dict(row)) if row else None

    async def delete_plant(self, plant_id: int) -> bool:
        return await self._delete("plants", plant_id)

    async def _update(self, table: str, row_id: int, changes: dict, returning: str):
        """
        Column names come from the update models' fields, values are always
        bound parameters. Returns None when no row has that id.
        """
        if not changes:
            raise ValueError("No fields to update")
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(changes, start=2))
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE {table} SET {assignments} WHERE id = $1 RETURNING {returning}",
                row_id,
                *changes.values(),
            )
        if row:
            logger.info(f"[catalog] {table} id={row_id} updated: {', '.join(changes)}")
        return row

    async def _delete(self, table: str, row_id: int) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(f"DELETE FROM {table} WHERE id = $1", row_id)
        deleted = status.split()[-1] != "0"
        if deleted:
            logger.info(f"[catalog] {table} id={row_id} deleted")
        return deleted


def _changes(data: BaseModel, required=()) -> dict:
    """Fields present in the body; an explicit null on a NOT NULL column is skipped."""
    changes = data.model_dump(exclude_unset=True)
    for column in required:
        if changes.get(column, "") is None:
            del changes[column]
    return changes
