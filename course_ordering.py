"""
Ordered video lists inside a course.

A course document keeps its playback order in "video_order", a plain list of
video ids. Each operation reads the course, computes the new list in memory
and writes the single field back. There is no version check between the read
and the write, so two concurrent mutations of one course resolve as last
write wins.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from database import DocumentStore
from errors import (
    DanglingReferenceError,
    EmptyListError,
    InvalidPositionError,
    InvalidVideoReferenceError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

COURSES = "course"
VIDEOS = "video"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CourseOrderingService:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    def _load_order(self, course_id: Any) -> List[Any]:
        course = self.store.get(COURSES, course_id)
        if course is None:
            raise NotFoundError("Course not found")
        return list(course.get("video_order") or [])

    def _save_order(self, course_id: Any, order: List[Any]) -> List[Any]:
        self.store.update_fields(COURSES, course_id, {"video_order": order, "updated_at": self.clock()})
        return order

    def insert_at(self, course_id: Any, video_id: Any, position: int) -> List[Any]:
        """
        Insert ``video_id`` at ``position`` and return the new order.

        ``position`` may equal the current length, which appends. The id is
        not checked against existing entries, so inserting a video twice
        stores it twice.
        """
        current = self._load_order(course_id)
        if isinstance(position, bool) or not isinstance(position, int) or not 0 <= position <= len(current):
            raise InvalidPositionError(f"Position must be between 0 and {len(current)}")

        new_order = current[:position] + [video_id] + current[position:]
        logger.info("Inserted video %s into course %s at position %d", video_id, course_id, position)
        return self._save_order(course_id, new_order)

    def reorder(self, course_id: Any, new_order: Sequence[Any]) -> List[Any]:
        """
        Replace the order with ``new_order``.

        Every id in ``new_order`` must already be in the course. Ids left out
        of ``new_order`` are dropped from the course.
        """
        current = set(self._load_order(course_id))
        unknown = [v for v in new_order if v not in current]
        if unknown:
            raise InvalidVideoReferenceError(f"Video {unknown[0]} is not part of this course")

        logger.info("Reordered %d videos in course %s", len(new_order), course_id)
        return self._save_order(course_id, list(new_order))

    def remove(self, course_id: Any, video_id: Any) -> List[Any]:
        """
        Remove the first occurrence of ``video_id`` and return the new order.

        An empty list is an error; an id that is not present leaves a
        non-empty list unchanged.
        """
        current = self._load_order(course_id)
        if not current:
            raise EmptyListError("Course does not have any videos")

        new_order = list(current)
        if video_id in new_order:
            new_order.remove(video_id)
            logger.info("Removed video %s from course %s", video_id, course_id)
        return self._save_order(course_id, new_order)

    def resolve(self, course_id: Any) -> List[Dict[str, Any]]:
        """Return the course's video documents in playback order."""
        videos = []
        for video_id in self._load_order(course_id):
            video = self.store.get(VIDEOS, video_id)
            if video is None:
                raise DanglingReferenceError(f"Video not found: {video_id}")
            videos.append(video)
        return videos
