# Overview: Page/offset helper shared by list endpoints.

from __future__ import annotations

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


def paginate(base_query, *, page: int | None, per_page: int | None) -> dict:
    """
    Run an ordered query, optionally one page of it.

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    # If no pagination requested, return all items
    if page is None:
        rows = base_query.all()
        return {
            "items": [r.to_dict() for r in rows],
            "count": len(rows),
        }

    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [r.to_dict() for r in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
