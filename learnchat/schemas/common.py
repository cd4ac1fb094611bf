from pydantic import BaseModel, ConfigDict


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split('_')
    return components[0] + ''.join(x.title() for x in components[1:])


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


def resolve_page(page: int | None, offset: int | None, limit: int | None, default_limit: int = 50, max_limit: int = 100) -> tuple[int, int, int]:
    """Accept page/limit or offset/limit and return (page, offset, limit).

    A page wins over an offset. For a raw offset the page is the one the offset
    falls in and is only reported back to the client.
    """
    limit = min(limit or default_limit, max_limit)
    if page:
        return page, (page - 1) * limit, limit
    offset = offset or 0
    return offset // limit + 1, offset, limit


def make_pagination(page: int, limit: int, total: int, offset: int | None = None) -> Pagination:
    if offset is None:
        offset = (page - 1) * limit
    return Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=(total + limit - 1) // limit,
        has_next=offset + limit < total,
        has_prev=offset > 0,
    )
