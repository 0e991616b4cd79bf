from typing import Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, col, select

from errors import InsufficientQuantityError, InvalidArgumentError, NotFoundError
from models import Item, utcnow
from schemas import ItemCreate, Page
from services.pagination import make_page, paginate

DESCRIPTIVE_FIELDS = ("name", "description", "purpose", "website")
# Descriptive fields stored NOT NULL; website may be cleared.
REQUIRED_FIELDS = ("name", "description", "purpose")


def _check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise InvalidArgumentError(
            "quantity must be a non-negative integer", field="quantity"
        )
    return quantity


class ItemLedger:
    """Item store. Writes are flushed, never committed; the caller owns the transaction."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, item_id: int) -> Item:
        item = self.session.get(Item, item_id)
        if item is None:
            raise NotFoundError("Item not found", resource_id=item_id)
        return item

    def create(self, item_in: ItemCreate, actor: str) -> Item:
        item = Item(
            name=item_in.name,
            description=item_in.description,
            purpose=item_in.purpose,
            website=item_in.website,
            quantity=_check_quantity(item_in.quantity),
            created_at=utcnow(),
            created_by=actor or "Unknown",
        )
        self.session.add(item)
        self.session.flush()
        return item

    def update_descriptive(self, item_id: int, fields: dict, actor: str) -> Item:
        for name in REQUIRED_FIELDS:
            if name in fields and fields[name] is None:
                raise InvalidArgumentError(f"{name} cannot be null", field=name)
        if "name" in fields and not fields["name"].strip():
            raise InvalidArgumentError("name cannot be blank", field="name")

        item = self.get(item_id)
        for name in DESCRIPTIVE_FIELDS:
            if name in fields:
                setattr(item, name, fields[name])
        self._touch(item, actor)
        return item

    def set_quantity(self, item_id: int, quantity: int, actor: str) -> Item:
        item = self.get(item_id)
        item.quantity = _check_quantity(quantity)
        self._touch(item, actor)
        return item

    def set_image(self, item_id: int, image: Optional[str], actor: str) -> Optional[str]:
        """Point the item at a new image reference and return the old one."""
        item = self.get(item_id)
        previous = item.image
        item.image = image
        self._touch(item, actor)
        return previous

    def adjust_quantity(self, item_id: int, delta: int) -> Item:
        """Add ``delta`` to the available quantity in one conditional UPDATE.

        The row only changes when the result stays non-negative, so two
        concurrent decrements can never both take the last unit.
        """
        result = self.session.exec(
            update(Item)
            .where(col(Item.id) == item_id, col(Item.quantity) + delta >= 0)
            .values(quantity=col(Item.quantity) + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            item = self.session.get(Item, item_id, populate_existing=True)
            if item is None:
                raise NotFoundError("Item not found", resource_id=item_id)
            raise InsufficientQuantityError(item_id, -delta, item.quantity)

        return self.session.get(Item, item_id, populate_existing=True)

    def delete(self, item_id: int) -> Item:
        item = self.get(item_id)
        self.session.delete(item)
        self.session.flush()
        return item

    def search(self, search: str, page: int, page_size: int) -> Page:
        query = select(Item)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    col(Item.name).ilike(pattern),
                    col(Item.description).ilike(pattern),
                    col(Item.purpose).ilike(pattern),
                )
            )
        query = query.order_by(col(Item.created_at).desc(), col(Item.id).desc())

        items, total = paginate(self.session, query, page, page_size)
        return make_page(items, page, page_size, total)

    def count(self) -> int:
        return self.session.exec(select(func.count()).select_from(Item)).one()

    def _touch(self, item: Item, actor: str) -> None:
        item.updated_at = utcnow()
        item.updated_by = actor or "Unknown"
        self.session.add(item)
        self.session.flush()
