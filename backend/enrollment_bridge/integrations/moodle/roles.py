from enum import IntEnum


class MoodleRole(IntEnum):
    """Standard Moodle role ids (https://docs.moodle.org/dev/Roles)."""

    MANAGER = 1
    COURSE_CREATOR = 2
    TEACHER = 3
    NON_EDITING_TEACHER = 4
    STUDENT = 5
    GUEST = 6
    AUTHENTICATED_USER = 7
    AUTHENTICATED_USER_ON_SITE_FRONTPAGE = 8

    @classmethod
    def is_valid(cls, role_id: int) -> bool:
        return role_id in cls._value2member_map_
