"""
Rule-based seniority classification of position titles.

Level 1 is top leadership and larger numbers are lower ranks. Rules are
checked top-down and the first match wins.
"""

BRANCH_LEVEL = 6
DISTRICT_OFFICE_LEVEL = 5
DEFAULT_LEVEL = 6
HEAD_MAX_LEVEL = 2


def _contains_any(title: str, keywords) -> bool:
    return any(keyword in title for keyword in keywords)


def detect_hierarchy_level(position: str) -> int:
    title = (position or "").lower()

    if _contains_any(title, ('commissioner general', 'director general', 'secretary', 'chairman')):
        return 1

    not_junior = 'deputy' not in title and 'assistant' not in title
    if (('commissioner' in title and not_junior)
            or ('director' in title and not_junior)
            or _contains_any(title, ('chief financial officer', 'cfo'))):
        return 2

    if _contains_any(title, ('deputy commissioner', 'deputy director', 'chief accountant', 'chief internal auditor')):
        return 3

    if _contains_any(title, ('assistant commissioner', 'assistant director')):
        return 4

    if _contains_any(title, ('accountant', 'legal', 'administrative officer', 'audit superintendent')):
        return 5

    return DEFAULT_LEVEL


def is_head_position(position: str) -> bool:
    return detect_hierarchy_level(position) <= HEAD_MAX_LEVEL
