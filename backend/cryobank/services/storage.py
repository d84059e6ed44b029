"""Storage topology service: Tank, Canister, Goblet and Slot persistence."""

import logging
import re
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.errors import NotFoundError, TransientIOError
from cryobank.models.enums import LocationType, SampleType
from cryobank.models.storage import CryoLocation
from cryobank.schemas.storage import DefaultBankCreate, LocationNode, LocationUpdate
from cryobank.services.audit import AuditService
from cryobank.services.ledger import LedgerService

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"\d+")

# Checked in order; the first name found in the raw type wins.
_TYPE_NAMES = (
    LocationType.TANK,
    LocationType.CANISTER,
    LocationType.GOBLET,
    LocationType.SLOT,
)


def extract_number(name: str | None) -> int | None:
    """First run of digits in ``name`` ("Slot 10" -> 10), or None."""
    match = _NUMBER.search(name or "")
    return int(match.group()) if match else None


def sort_by_number_in_name(items: Iterable, name=lambda item: item.name) -> list:
    """Sort by the first number in each name; unnumbered names go last.

    The sort is stable, so ties keep their incoming order.
    """
    def key(item):
        number = extract_number(name(item))
        return (number is None, number or 0)

    return sorted(items, key=key)


def normalize_location_type(raw) -> LocationType:
    """Map a raw type label onto the four node kinds; unknown labels are slots."""
    if isinstance(raw, LocationType):
        return raw
    label = str(getattr(raw, "value", raw) or "").lower()
    for location_type in _TYPE_NAMES:
        if location_type.value in label:
            return location_type
    return LocationType.SLOT


@contextmanager
def _transient_reads() -> Iterator[None]:
    # Connection-level failures on reads surface as retryable errors.
    try:
        yield
    except (OperationalError, DBAPIError) as exc:
        raise TransientIOError("Storage backend unavailable.") from exc


class StorageService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.ledger = LedgerService(db)

    # ── Lookups ──────────────────────────────────────────────────────

    async def list_roots(self) -> list[CryoLocation]:
        with _transient_reads():
            result = await self.db.execute(
                select(CryoLocation)
                .where(
                    CryoLocation.parent_id.is_(None),
                    CryoLocation.is_deleted == False,  # noqa: E712
                )
                .order_by(CryoLocation.created_at.asc())
            )
            return list(result.scalars().all())

    async def list_children(self, parent_id: uuid.UUID) -> list[CryoLocation]:
        with _transient_reads():
            result = await self.db.execute(
                select(CryoLocation)
                .where(
                    CryoLocation.parent_id == parent_id,
                    CryoLocation.is_deleted == False,  # noqa: E712
                )
                .order_by(CryoLocation.created_at.asc())
            )
            return list(result.scalars().all())

    async def get_location(self, location_id: uuid.UUID) -> CryoLocation | None:
        with _transient_reads():
            result = await self.db.execute(
                select(CryoLocation).where(
                    CryoLocation.id == location_id,
                    CryoLocation.is_deleted == False,  # noqa: E712
                )
            )
            return result.scalar_one_or_none()

    async def require_location(self, location_id: uuid.UUID) -> CryoLocation:
        location = await self.get_location(location_id)
        if location is None:
            raise NotFoundError(f"Cryo location {location_id} not found.")
        return location

    async def lock_location(self, location_id: uuid.UUID) -> CryoLocation:
        """Fetch a location with a row lock held until the transaction ends."""
        result = await self.db.execute(
            select(CryoLocation)
            .where(
                CryoLocation.id == location_id,
                CryoLocation.is_deleted == False,  # noqa: E712
            )
            .with_for_update()
        )
        location = result.scalar_one_or_none()
        if location is None:
            raise NotFoundError(f"Cryo location {location_id} not found.")
        return location

    async def ancestor_ids(self, location_id: uuid.UUID) -> list[uuid.UUID]:
        """Ids from the parent of ``location_id`` up to its root tank."""
        ids = []
        location = await self.get_location(location_id)
        while location is not None and location.parent_id is not None:
            ids.append(location.parent_id)
            location = await self.get_location(location.parent_id)
        return ids

    async def first_inactive_on_path(
        self, location: CryoLocation
    ) -> CryoLocation | None:
        """``location`` or its nearest ancestor when deactivated, else None."""
        node: CryoLocation | None = location
        while node is not None:
            if not node.is_active:
                return node
            if node.parent_id is None:
                return None
            node = await self.get_location(node.parent_id)
        return None

    # ── Occupancy ────────────────────────────────────────────────────

    async def _descendants_by_level(
        self, parent_ids: list[uuid.UUID]
    ) -> list[CryoLocation]:
        """Every live node below ``parent_ids``, breadth first."""
        found: list[CryoLocation] = []
        frontier = list(parent_ids)
        while frontier:
            with _transient_reads():
                result = await self.db.execute(
                    select(CryoLocation).where(
                        CryoLocation.parent_id.in_(frontier),
                        CryoLocation.is_deleted == False,  # noqa: E712
                    )
                )
                level = list(result.scalars().all())
            found.extend(level)
            # Slots never have children.
            frontier = [
                loc.id for loc in level if loc.location_type != LocationType.SLOT
            ]
        return found

    async def subtree_counts(
        self, locations: list[CryoLocation]
    ) -> dict[uuid.UUID, int]:
        """Occupied slot count for the subtree under each given location."""
        owner: dict[uuid.UUID, uuid.UUID] = {}
        slot_owner: dict[uuid.UUID, uuid.UUID] = {}
        parents = []
        for loc in locations:
            if loc.location_type == LocationType.SLOT:
                slot_owner[loc.id] = loc.id
            else:
                owner[loc.id] = loc.id
                parents.append(loc.id)

        for loc in await self._descendants_by_level(parents):
            top = owner[loc.parent_id]
            owner[loc.id] = top
            if loc.location_type == LocationType.SLOT:
                slot_owner[loc.id] = top

        with _transient_reads():
            occupied = await self.ledger.occupied_slot_ids(list(slot_owner))
        counts = {loc.id: 0 for loc in locations}
        for slot_id in occupied:
            counts[slot_owner[slot_id]] += 1
        return counts

    async def full_tree(self, root_id: uuid.UUID) -> LocationNode:
        """The whole subtree under ``root_id`` with occupancy counts."""
        root = await self.require_location(root_id)
        descendants = await self._descendants_by_level([root.id])
        slot_ids = [
            loc.id for loc in descendants if loc.location_type == LocationType.SLOT
        ]
        if root.location_type == LocationType.SLOT:
            slot_ids.append(root.id)
        with _transient_reads():
            occupied = await self.ledger.occupied_slot_ids(slot_ids)

        children_of: dict[uuid.UUID, list[CryoLocation]] = {}
        for loc in descendants:
            children_of.setdefault(loc.parent_id, []).append(loc)

        def build(loc: CryoLocation) -> LocationNode:
            node = LocationNode.model_validate(loc)
            if loc.location_type == LocationType.SLOT:
                node.children = []
                node.sample_count = 1 if loc.id in occupied else 0
            else:
                node.children = [
                    build(child)
                    for child in sort_by_number_in_name(children_of.get(loc.id, []))
                ]
                node.sample_count = sum(c.sample_count for c in node.children)
            node.is_loaded = True
            return node

        return build(root)

    # ── Mutations ────────────────────────────────────────────────────

    async def create_location(
        self,
        *,
        name: str,
        code: str,
        location_type: LocationType,
        parent: CryoLocation | None = None,
        sample_type: SampleType | None = None,
        capacity: int | None = None,
        temperature: Decimal | None = None,
    ) -> CryoLocation:
        if parent is not None and parent.location_type == LocationType.SLOT:
            raise ValueError("A slot cannot contain other locations.")
        location = CryoLocation(
            id=uuid.uuid4(),
            name=name,
            code=code,
            location_type=location_type,
            parent_id=parent.id if parent else None,
            sample_type=sample_type,
            capacity=capacity,
            temperature=temperature,
        )
        self.db.add(location)
        return location

    async def initialize_default_bank(
        self, data: DefaultBankCreate, created_by: uuid.UUID | None
    ) -> list[CryoLocation]:
        """Build the standard Tank > Canister > Goblet > Slot layout."""
        if await self.list_roots():
            raise ValueError("The storage bank is already initialized.")

        tanks = []
        slot_total = 0
        for t in range(1, data.tanks + 1):
            tank_type = (
                data.tank_sample_types[(t - 1) % len(data.tank_sample_types)]
                if data.tank_sample_types else None
            )
            tank = await self.create_location(
                name=f"Tank {t}",
                code=f"T{t}",
                location_type=LocationType.TANK,
                sample_type=tank_type,
                capacity=data.canisters_per_tank,
                temperature=data.temperature,
            )
            tanks.append(tank)
            for c in range(1, data.canisters_per_tank + 1):
                canister = await self.create_location(
                    name=f"Canister {c}",
                    code=f"{tank.code}-C{c}",
                    location_type=LocationType.CANISTER,
                    parent=tank,
                    sample_type=tank_type,
                    capacity=data.goblets_per_canister,
                    temperature=data.temperature,
                )
                for g in range(1, data.goblets_per_canister + 1):
                    goblet = await self.create_location(
                        name=f"Goblet {g}",
                        code=f"{canister.code}-G{g}",
                        location_type=LocationType.GOBLET,
                        parent=canister,
                        sample_type=tank_type,
                        capacity=data.slots_per_goblet,
                        temperature=data.temperature,
                    )
                    for s in range(1, data.slots_per_goblet + 1):
                        await self.create_location(
                            name=f"Slot {s}",
                            code=f"{goblet.code}-S{s}",
                            location_type=LocationType.SLOT,
                            parent=goblet,
                            sample_type=tank_type,
                            capacity=1,
                            temperature=data.temperature,
                        )
                        slot_total += 1
        await self.db.flush()

        logger.info(
            "Initialized default bank: %d tanks, %d slots", len(tanks), slot_total
        )
        await self.audit.log_create(
            user_id=created_by,
            entity_type="cryo_location",
            entity_id=tanks[0].id,
            new_values={"tanks": [t.code for t in tanks], "slots": slot_total},
            context={"event": "initialize_default_bank"},
        )
        return tanks

    async def update_location(
        self,
        location_id: uuid.UUID,
        data: LocationUpdate,
        updated_by: uuid.UUID | None,
    ) -> CryoLocation:
        location = await self.require_location(location_id)

        old_values = {}
        new_values = {}
        for field, value in data.model_dump(exclude_unset=True).items():
            current = getattr(location, field)
            if value != current:
                old_values[field] = str(current) if current is not None else None
                setattr(location, field, value)
                new_values[field] = str(value) if value is not None else None

        if new_values:
            await self.audit.log_update(
                user_id=updated_by,
                entity_type="cryo_location",
                entity_id=location.id,
                old_values=old_values,
                new_values=new_values,
            )
        return location
