def list_response(items: list, limit: int, offset: int) -> dict:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


class ListResponseMixin:
    @classmethod
    def list_response(cls, db, *args, **kwargs):
        limit = kwargs.get("limit")
        offset = kwargs.get("offset")
        if limit is None or offset is None:
            raise ValueError("limit and offset are required for list responses")
        items = cls.list(db, *args, **kwargs)
        return list_response(items, limit, offset)
