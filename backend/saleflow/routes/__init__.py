# Overview: Flask blueprints; shared query-string helpers.

from flask import request

from ..validation import coerce_int


def pagination_args(default_per_page: int = 20) -> tuple[int, int]:
    """?page=&per_page= as ints (ValidationError on junk)."""
    page = coerce_int(request.args.get("page", "1"), "page")
    per_page = coerce_int(request.args.get("per_page", str(default_per_page)), "per_page")
    return page, per_page
