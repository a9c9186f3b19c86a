def list_response(
    items: list, limit: int, offset: int, *, total: int | None = None
) -> dict:
    return {
        "items": items,
        "count": len(items),
        "limit": limit,
        "offset": offset,
        "total": total if total is not None else len(items),
    }


class ListResponseMixin:
    def list_response(self, db, *args, **kwargs) -> dict:
        """Call ``self.list`` and wrap the page. limit/offset are the last two args."""
        if "limit" in kwargs:
            limit, offset = kwargs["limit"], kwargs["offset"]
        else:
            limit, offset = args[-2], args[-1]
        items, total = self.list(db, *args, **kwargs)  # type: ignore[attr-defined]
        return list_response(items, limit, offset, total=total)
