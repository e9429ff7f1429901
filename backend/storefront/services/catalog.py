from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.catalog import product_categories


async def find_categories_for_product_ids(session: AsyncSession, product_ids: Iterable[int]) -> dict[int, list[int]]:
    """Map each product id to the ids of the categories it belongs to.

    Products without categories (or unknown ids) are simply absent from the map.
    """
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return {}
    rows = await session.execute(
        select(product_categories.c.product_id, product_categories.c.category_id)
        .where(product_categories.c.product_id.in_(ids))
        .order_by(product_categories.c.product_id, product_categories.c.category_id)
    )
    catalog: dict[int, list[int]] = {}
    for product_id, category_id in rows.all():
        catalog.setdefault(int(product_id), []).append(int(category_id))
    return catalog
