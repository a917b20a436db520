"""Teacher dashboard endpoints: courses, lectures and the creator view.

The same lecture shows up in three places: the course's lecture list, the
single-lecture view, and embedded in the teacher's creator-courses aggregate.
The patch plans below keep all materialized copies in step while a mutation
is in flight; declared tags then refresh whatever the patches did not cover.

Usage:
    transport = HttpTransport("https://api.example.com/api/v1", token=get_token)
    register_dashboard(engine, transport, identity=lambda: session.user_id)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from tagsync.codec import encode_key
from tagsync.engine import CacheEngine
from tagsync.tags import define_tags
from tagsync.types import PatchSpec, Tag

Identity = Callable[[], str | None]

TAGS = define_tags(
    {
        "lecture": lambda lecture_id: ("lecture", lecture_id),
        "lectures": lambda course_id: ("lectures", course_id),
        "course": lambda course_id: ("course", course_id),
        "creator": lambda teacher_id: ("creator", teacher_id),
    }
)


class DashboardTransport(Protocol):
    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any: ...

    async def post(self, path: str, json: Any = None) -> Any: ...

    async def patch(self, path: str, json: Any = None) -> Any: ...

    async def delete(self, path: str) -> Any: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id_of(item: Any) -> str:
    # Course payloads embed lectures either populated or as bare ids
    return item if isinstance(item, str) else item["_id"]


def _find(items: list[Any], item_id: str) -> Any | None:
    for item in items:
        if not isinstance(item, str) and item.get("_id") == item_id:
            return item
    return None


# -----------------------------------------------------------------------------
# Tags provided by queries
# -----------------------------------------------------------------------------


def _lecture_list_tags(args: dict[str, Any], result: Any) -> list[Tag]:
    return [
        TAGS["lectures"](args["course_id"]),
        *(TAGS["lecture"](_id_of(lecture)) for lecture in result or []),
    ]


def _lecture_tags(args: dict[str, Any], result: Any) -> list[Tag]:
    return [TAGS["lecture"](args["lecture_id"])]


def _course_tags(course: dict[str, Any]) -> list[Tag]:
    return [
        TAGS["course"](course["_id"]),
        TAGS["lectures"](course["_id"]),
        *(TAGS["lecture"](_id_of(lecture)) for lecture in course.get("lectures") or []),
    ]


def _single_course_tags(args: dict[str, Any], result: Any) -> list[Tag]:
    tags = [TAGS["course"](args["course_id"])]
    if result:
        tags.extend(_course_tags(result))
    return tags


def _creator_courses_tags(args: dict[str, Any], result: Any) -> list[Tag]:
    tags = [TAGS["creator"](args["teacher_id"])]
    for course in result or []:
        tags.extend(_course_tags(course))
    return tags


# -----------------------------------------------------------------------------
# Patch recipes
# -----------------------------------------------------------------------------


def _edit_lecture_in_list(
    lecture_id: str, fields: dict[str, Any]
) -> Callable[[Any], None]:
    def recipe(lectures: list[Any]) -> None:
        lecture = _find(lectures, lecture_id)
        if lecture is not None:
            lecture.update(fields)
            lecture["updatedAt"] = _now()

    return recipe


def _adopt_lecture_in_list(lecture_id: str) -> Callable[[Any, Any], None]:
    def adopt(lectures: list[Any], server_lecture: Any) -> None:
        lecture = _find(lectures, lecture_id)
        if lecture is not None and isinstance(server_lecture, dict):
            lecture.update(server_lecture)

    return adopt


def _in_creator_course(
    course_id: str, recipe: Callable[[dict[str, Any]], None]
) -> Callable[[Any], None]:
    def creator_recipe(courses: list[Any]) -> None:
        course = _find(courses, course_id)
        if course is not None:
            recipe(course)
            course["updatedAt"] = _now()

    return creator_recipe


def _edit_embedded_lecture(
    lecture_id: str, fields: dict[str, Any]
) -> Callable[[Any], None]:
    def recipe(course: dict[str, Any]) -> None:
        _edit_lecture_in_list(lecture_id, fields)(course.get("lectures") or [])

    return recipe


def _reorder(order: list[dict[str, Any]]) -> Callable[[Any], None]:
    positions = {item["lecture_id"]: item["order"] for item in order}

    def recipe(lectures: list[Any]) -> None:
        for lecture in lectures:
            if not isinstance(lecture, str) and lecture["_id"] in positions:
                lecture["order"] = positions[lecture["_id"]]
        lectures.sort(
            key=lambda item: 0 if isinstance(item, str) else item.get("order") or 0
        )

    return recipe


def _without(item_id: str) -> Callable[[Any], list[Any]]:
    def recipe(items: list[Any]) -> list[Any]:
        return [item for item in items if _id_of(item) != item_id]

    return recipe


def _replace_list(lectures: list[Any], server_lectures: Any) -> Any:
    return server_lectures if isinstance(server_lectures, list) else None


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------


def register_dashboard(
    engine: CacheEngine,
    transport: DashboardTransport,
    identity: Identity | None = None,
) -> None:
    """Register the dashboard's queries and mutations on ``engine``.

    ``identity`` returns the signed-in teacher's id; without one the creator
    view is neither patched nor invalidated by lecture mutations.
    """

    def teacher_id() -> str | None:
        return identity() if identity is not None else None

    def creator_key() -> str | None:
        tid = teacher_id()
        return encode_key("creator_courses", {"teacher_id": tid}) if tid else None

    def creator_tags() -> list[Tag]:
        tid = teacher_id()
        return [TAGS["creator"](tid)] if tid else []

    # -- queries ---------------------------------------------------------------

    @engine.endpoint(tags=_lecture_list_tags)
    async def lectures_by_course(args: dict[str, Any]) -> Any:
        return await transport.get(f"/lectures/{args['course_id']}/get-lectures")

    @engine.endpoint(tags=_lecture_tags)
    async def lecture(args: dict[str, Any]) -> Any:
        return await transport.get(f"/lectures/{args['lecture_id']}")

    @engine.endpoint(tags=_single_course_tags, keep_unused_for=0)
    async def course(args: dict[str, Any]) -> Any:
        return await transport.get(f"/courses/{args['course_id']}")

    @engine.endpoint(tags=_creator_courses_tags, keep_unused_for=0)
    async def creator_courses(args: dict[str, Any]) -> Any:
        return await transport.get(f"/courses/creator/{args['teacher_id']}")

    # -- mutations -------------------------------------------------------------

    def update_lecture_plan(args: dict[str, Any]) -> dict[str, PatchSpec]:
        course_id, lecture_id = args["course_id"], args["lecture_id"]
        fields = args["data"]
        plan = {
            encode_key("lectures_by_course", {"course_id": course_id}): PatchSpec(
                forward=_edit_lecture_in_list(lecture_id, fields),
                adopt=_adopt_lecture_in_list(lecture_id),
            ),
            encode_key("lecture", {"lecture_id": lecture_id}): PatchSpec(
                forward=lambda current: current.update(fields),
                adopt=lambda current, server: server,
            ),
        }
        key = creator_key()
        if key is not None:
            plan[key] = PatchSpec(
                forward=_in_creator_course(
                    course_id, _edit_embedded_lecture(lecture_id, fields)
                ),
            )
        return plan

    @engine.mutation(
        tags=lambda args: [
            TAGS["lecture"](args["lecture_id"]),
            TAGS["course"](args["course_id"]),
            TAGS["lectures"](args["course_id"]),
        ],
        patch_plan=update_lecture_plan,
        entity_id=lambda args: args["lecture_id"],
    )
    async def update_lecture(args: dict[str, Any]) -> Any:
        return await transport.patch(
            f"/lectures/{args['course_id']}/update-lecture/{args['lecture_id']}",
            json=args["data"],
        )

    def reorder_plan(args: dict[str, Any]) -> dict[str, PatchSpec]:
        course_id = args["course_id"]
        plan = {
            encode_key("lectures_by_course", {"course_id": course_id}): PatchSpec(
                forward=_reorder(args["order"]), adopt=_replace_list
            ),
        }
        key = creator_key()
        if key is not None:
            reorder = _reorder(args["order"])
            plan[key] = PatchSpec(
                forward=_in_creator_course(
                    course_id, lambda current: reorder(current.get("lectures") or [])
                ),
            )
        return plan

    @engine.mutation(
        tags=lambda args: [
            TAGS["lectures"](args["course_id"]),
            TAGS["course"](args["course_id"]),
        ],
        patch_plan=reorder_plan,
        entity_id=lambda args: args["course_id"],
    )
    async def reorder_lectures(args: dict[str, Any]) -> Any:
        body = {
            "lectures": [
                {"lectureId": item["lecture_id"], "order": item["order"]}
                for item in args["order"]
            ]
        }
        return await transport.patch(
            f"/lectures/{args['course_id']}/update-order", json=body
        )

    def delete_lecture_plan(args: dict[str, Any]) -> dict[str, PatchSpec]:
        course_id, lecture_id = args["course_id"], args["lecture_id"]
        plan = {
            encode_key("lectures_by_course", {"course_id": course_id}): PatchSpec(
                forward=_without(lecture_id)
            ),
        }
        key = creator_key()
        if key is not None:
            remove = _without(lecture_id)

            def drop_embedded(course: dict[str, Any]) -> None:
                course["lectures"] = remove(course.get("lectures") or [])

            plan[key] = PatchSpec(forward=_in_creator_course(course_id, drop_embedded))
        return plan

    @engine.mutation(
        tags=lambda args: [
            TAGS["lecture"](args["lecture_id"]),
            TAGS["lectures"](args["course_id"]),
            TAGS["course"](args["course_id"]),
        ],
        patch_plan=delete_lecture_plan,
        entity_id=lambda args: args["lecture_id"],
    )
    async def delete_lecture(args: dict[str, Any]) -> Any:
        return await transport.delete(
            f"/lectures/{args['course_id']}/delete-lecture/{args['lecture_id']}"
        )

    def edit_course_plan(args: dict[str, Any]) -> dict[str, PatchSpec]:
        course_id, fields = args["course_id"], args["data"]
        plan = {
            encode_key("course", {"course_id": course_id}): PatchSpec(
                forward=lambda current: current.update(fields),
                adopt=lambda current, server: server,
            ),
        }
        key = creator_key()
        if key is not None:
            plan[key] = PatchSpec(
                forward=_in_creator_course(
                    course_id, lambda current: current.update(fields)
                ),
            )
        return plan

    @engine.mutation(
        tags=lambda args: [TAGS["course"](args["course_id"]), *creator_tags()],
        patch_plan=edit_course_plan,
        entity_id=lambda args: args["course_id"],
    )
    async def edit_course(args: dict[str, Any]) -> Any:
        return await transport.patch(
            f"/courses/edit-course/{args['course_id']}", json=args["data"]
        )

    def delete_course_plan(args: dict[str, Any]) -> dict[str, PatchSpec]:
        key = creator_key()
        if key is None:
            return {}
        return {key: PatchSpec(forward=_without(args["course_id"]))}

    @engine.mutation(
        tags=lambda args: [
            TAGS["course"](args["course_id"]),
            TAGS["lectures"](args["course_id"]),
            *creator_tags(),
        ],
        patch_plan=delete_course_plan,
        entity_id=lambda args: args["course_id"],
    )
    async def delete_course(args: dict[str, Any]) -> Any:
        return await transport.delete(f"/courses/delete-course/{args['course_id']}")


__all__ = ["TAGS", "DashboardTransport", "register_dashboard"]
