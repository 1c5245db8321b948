"""
MongoDB access for teachers, coordinator profiles and observations.

Reads go through parameterized filters only. Any driver failure surfaces as
`DataUnavailable` so the API can tell "store down" apart from "no data".
"""
import logging
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from compliance import ViewerScope

logger = logging.getLogger(__name__)

OBSERVATION_FETCH_LIMIT = 20000


class DataUnavailable(Exception):
    """The external store could not be reached or answered with an error."""


class Snapshot(BaseModel):
    coordinators: List[Dict[str, Any]] = []
    teachers: List[Dict[str, Any]] = []
    observations: List[Dict[str, Any]] = []


def to_utc_iso(moment: datetime, tz: Optional[tzinfo] = None) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz or timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


class ObservationStore:
    def __init__(self, db, tz: Optional[tzinfo] = None):
        self.db = db
        self.tz = tz

    async def ensure_indexes(self) -> None:
        await self.db.teachers.create_index([("id", 1)])
        await self.db.teachers.create_index([("coordinator_id", 1)])
        await self.db.teachers.create_index([("school_id", 1)])
        await self.db.profiles.create_index([("id", 1)])
        await self.db.profiles.create_index([("role", 1), ("school_id", 1)])
        await self.db.observations.create_index([("teacher_id", 1), ("created_at", 1)])
        await self.db.follow_ups.create_index([("teacher_id", 1), ("scheduled_date", 1)])

    async def fetch_coordinators(self, viewer: Optional[ViewerScope] = None, campus: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"role": "coordinator"}
        if viewer is not None and viewer.role == "director" and viewer.school_id:
            query["school_id"] = viewer.school_id
        elif campus and campus != "all":
            query["school_id"] = campus
        try:
            return await self.db.profiles.find(query, {"_id": 0}).sort("full_name", 1).to_list(1000)
        except PyMongoError as exc:
            logger.error("Coordinator fetch failed: %s", exc)
            raise DataUnavailable("coordinators") from exc

    async def fetch_teachers(
        self,
        coordinator_ids: Optional[List[str]] = None,
        school_id: Optional[str] = None,
        unassigned: bool = False,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if unassigned:
            query["coordinator_id"] = None
        elif coordinator_ids is not None:
            query["coordinator_id"] = {"$in": coordinator_ids}
        if school_id:
            query["school_id"] = school_id
        try:
            return await self.db.teachers.find(query, {"_id": 0}).sort("full_name", 1).to_list(5000)
        except PyMongoError as exc:
            logger.error("Teacher fetch failed: %s", exc)
            raise DataUnavailable("teachers") from exc

    async def fetch_observations(
        self,
        teacher_ids: Optional[List[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if teacher_ids is not None:
            query["teacher_id"] = {"$in": teacher_ids}
        if since is not None:
            query["created_at"] = {"$gte": to_utc_iso(since, self.tz)}
        try:
            return await self.db.observations.find(query, {"_id": 0}).sort("created_at", -1).to_list(OBSERVATION_FETCH_LIMIT)
        except PyMongoError as exc:
            logger.error("Observation fetch failed: %s", exc)
            raise DataUnavailable("observations") from exc

    async def fetch_snapshot(
        self,
        viewer: Optional[ViewerScope] = None,
        campus: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Snapshot:
        """Everything one compliance computation needs, fetched in one pass."""
        coordinators = await self.fetch_coordinators(viewer, campus)
        if not coordinators:
            return Snapshot()
        teachers = await self.fetch_teachers([c["id"] for c in coordinators])
        observations: List[Dict[str, Any]] = []
        if teachers:
            observations = await self.fetch_observations([t["id"] for t in teachers], since)
        return Snapshot(coordinators=coordinators, teachers=teachers, observations=observations)

    async def get_teacher(self, teacher_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.db.teachers.find_one({"id": teacher_id}, {"_id": 0})
        except PyMongoError as exc:
            logger.error("Teacher lookup failed: %s", exc)
            raise DataUnavailable("teachers") from exc

    async def insert_teacher(self, teacher: Dict[str, Any]) -> None:
        try:
            await self.db.teachers.insert_one(dict(teacher))
        except PyMongoError as exc:
            logger.error("Teacher insert failed: %s", exc)
            raise DataUnavailable("teachers") from exc

    async def update_teacher(self, teacher_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            result = await self.db.teachers.find_one_and_update(
                {"id": teacher_id}, {"$set": fields}, return_document=True
            )
        except PyMongoError as exc:
            logger.error("Teacher update failed: %s", exc)
            raise DataUnavailable("teachers") from exc
        if result:
            result.pop("_id", None)
        return result

    async def delete_teacher(self, teacher_id: str) -> str:
        """Hard delete, or deactivate when observation history references the teacher."""
        try:
            history = await self.db.observations.count_documents({"teacher_id": teacher_id})
            if history:
                await self.db.teachers.update_one({"id": teacher_id}, {"$set": {"is_active": False}})
                logger.info("Teacher %s has %d observations; deactivated instead of deleted", teacher_id, history)
                return "deactivated"
            await self.db.teachers.delete_one({"id": teacher_id})
            return "deleted"
        except PyMongoError as exc:
            logger.error("Teacher delete failed: %s", exc)
            raise DataUnavailable("teachers") from exc

    async def insert_observation(self, observation: Dict[str, Any]) -> None:
        try:
            await self.db.observations.insert_one(dict(observation))
        except PyMongoError as exc:
            logger.error("Observation insert failed: %s", exc)
            raise DataUnavailable("observations") from exc

    async def insert_follow_ups(self, follow_ups: List[Dict[str, Any]]) -> None:
        if not follow_ups:
            return
        try:
            await self.db.follow_ups.insert_many([dict(follow_up) for follow_up in follow_ups])
        except PyMongoError as exc:
            logger.error("Follow-up insert failed: %s", exc)
            raise DataUnavailable("follow_ups") from exc

    async def fetch_follow_ups(
        self,
        teacher_id: Optional[str] = None,
        coordinator_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if teacher_id:
            query["teacher_id"] = teacher_id
        if coordinator_id:
            query["coordinator_id"] = coordinator_id
        if status:
            query["status"] = status
        try:
            return await self.db.follow_ups.find(query, {"_id": 0}).sort("scheduled_date", 1).to_list(1000)
        except PyMongoError as exc:
            logger.error("Follow-up fetch failed: %s", exc)
            raise DataUnavailable("follow_ups") from exc
