# Overview: Shared pagination helpers for list endpoints.

from __future__ import annotations

import math

from flask import current_app, has_app_context


def clamp_page(page: int | None, limit: int | None) -> tuple[int, int]:
    """Normalize page/limit: page >= 1, 1 <= limit <= MAX_PAGE_LIMIT."""
    default_limit = 20
    max_limit = 100
    if has_app_context():
        default_limit = current_app.config.get("DEFAULT_PAGE_LIMIT", default_limit)
        max_limit = current_app.config.get("MAX_PAGE_LIMIT", max_limit)

    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return page, min(limit, max_limit)


def page_meta(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
