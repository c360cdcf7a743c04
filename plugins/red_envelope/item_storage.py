"""
物品红包的物品快照持久化

每个发送者一行：54 格物品数组（JSON）以及关联的红包 ID / 过期时间。
关联到未结束的红包时快照被锁定，发送者不能再编辑，但抽取仍会扣减物品。
"""

import random
from typing import Callable, List, Optional

from nonebot.log import logger
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .distribution import pick_slot, take_one
from .exceptions import Empty, InternalStoreError, InvalidRequest, ItemsLocked
from .models import ItemSnapshot, ItemStack, Snapshot, dump_slots, load_slots, now_ms
from .store import StaleWrite


class ItemStorage:
    EDIT_ATTEMPTS = 10

    def __init__(self, session_factory: sessionmaker, slots: int = 54):
        self._session_factory = session_factory
        self.slots = slots

    def _normalize(self, items: List[Optional[ItemStack]]) -> List[Optional[ItemStack]]:
        if len(items) > self.slots:
            raise InvalidRequest(f"At most {self.slots} item slots, got {len(items)}")
        return list(items) + [None] * (self.slots - len(items))

    def get_snapshot(self, owner: str) -> Optional[Snapshot]:
        with session_scope(self._session_factory, "加载物品快照") as session:
            row = session.get(ItemSnapshot, owner)
            return Snapshot.from_row(row) if row else None

    def load_items(self, owner: str) -> Optional[List[Optional[ItemStack]]]:
        snapshot = self.get_snapshot(owner)
        return snapshot.items if snapshot else None

    def save_items(
        self,
        owner: str,
        items: List[Optional[ItemStack]],
        envelope_id: Optional[str] = None,
        expires_at: int = 0,
    ) -> Snapshot:
        """保存物品（关联红包信息），已存在则覆盖"""
        items = self._normalize(items)
        with session_scope(self._session_factory, "保存物品快照") as session:
            row = session.get(ItemSnapshot, owner)
            if row is None:
                row = ItemSnapshot(owner=owner, version=0)
                session.add(row)
            else:
                row.version = row.version + 1
            row.items = dump_slots(items)
            row.envelope_id = envelope_id
            row.expires_at = expires_at
            row.updated_at = now_ms()
            session.commit()
            return Snapshot.from_row(row)

    def _edit(
        self,
        owner: str,
        change: Callable[[List[Optional[ItemStack]]], List[Optional[ItemStack]]],
        now: Optional[int] = None,
    ) -> Snapshot:
        """Apply ``change`` to the owner's slots unless a red envelope holds them

        The write is conditional on the version that was read, so an envelope
        associated (or an item drawn) in between is never overwritten.
        """
        for _ in range(self.EDIT_ATTEMPTS):
            snapshot = self.get_snapshot(owner)
            if snapshot is None:
                return self.save_items(owner, change(self._normalize([])))
            if snapshot.is_locked(now):
                raise ItemsLocked(owner, snapshot.envelope_id)

            items = self._normalize(change(list(snapshot.items)))
            with session_scope(self._session_factory, "编辑物品") as session:
                result = session.execute(
                    update(ItemSnapshot)
                    .where(
                        ItemSnapshot.owner == owner,
                        ItemSnapshot.version == snapshot.version,
                    )
                    .values(
                        items=dump_slots(items),
                        envelope_id=None,
                        expires_at=0,
                        updated_at=now_ms(),
                        version=snapshot.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            if result.rowcount == 1:
                return self.get_snapshot(owner)
            logger.debug(f"{owner} 的物品在编辑时被修改，重试")

        raise InternalStoreError(f"Items of {owner} kept changing during edit")

    def edit_items(
        self, owner: str, items: List[Optional[ItemStack]], now: Optional[int] = None
    ) -> Snapshot:
        """The owner's own edit, refused while a red envelope holds the items"""
        return self._edit(owner, lambda _: list(items), now)

    def add_item(
        self, owner: str, stack: ItemStack, now: Optional[int] = None
    ) -> Snapshot:
        """Put a stack into the owner's storage, merged into an identical stack if any"""

        def change(items: List[Optional[ItemStack]]) -> List[Optional[ItemStack]]:
            for i, current in enumerate(items):
                if current is not None and current.model_copy(
                    update={"amount": stack.amount}
                ) == stack:
                    items[i] = current.model_copy(
                        update={"amount": current.amount + stack.amount}
                    )
                    return items
            for i, current in enumerate(items):
                if current is None:
                    items[i] = stack
                    return items
            raise InvalidRequest(f"物品栏已满，最多 {self.slots} 格")

        return self._edit(owner, change, now)

    def clear_items(self, owner: str, now: Optional[int] = None) -> Snapshot:
        return self._edit(owner, lambda _: [], now)

    def is_locked(self, owner: str, now: Optional[int] = None) -> bool:
        snapshot = self.get_snapshot(owner)
        return snapshot is not None and snapshot.is_locked(now)

    def get_envelope_id(self, owner: str) -> Optional[str]:
        snapshot = self.get_snapshot(owner)
        return snapshot.envelope_id if snapshot else None

    def get_expires_at(self, owner: str) -> int:
        snapshot = self.get_snapshot(owner)
        return snapshot.expires_at if snapshot else 0

    def associate(
        self,
        owner: str,
        envelope_id: str,
        expires_at: int,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Point the snapshot at an envelope, which locks it

        With ``expected_version`` the update only applies if nobody touched the
        snapshot since it was read.
        """
        with session_scope(self._session_factory, "关联物品红包") as session:
            stmt = update(ItemSnapshot).where(ItemSnapshot.owner == owner)
            if expected_version is not None:
                stmt = stmt.where(ItemSnapshot.version == expected_version)
            result = session.execute(
                stmt.values(
                    envelope_id=envelope_id,
                    expires_at=expires_at,
                    updated_at=now_ms(),
                    version=ItemSnapshot.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def clear_association(self, owner: str, envelope_id: Optional[str] = None) -> bool:
        """清除红包关联（红包被领完、过期或删除时调用）

        With ``envelope_id`` the association is only cleared if it still points
        at that envelope, so a newer envelope's lock survives.
        """
        with session_scope(self._session_factory, "清除红包关联") as session:
            stmt = update(ItemSnapshot).where(ItemSnapshot.owner == owner)
            if envelope_id is not None:
                stmt = stmt.where(ItemSnapshot.envelope_id == envelope_id)
            result = session.execute(
                stmt.values(
                    envelope_id=None,
                    expires_at=0,
                    updated_at=now_ms(),
                    version=ItemSnapshot.version + 1,
                ).execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def delete_items(self, owner: str) -> None:
        with session_scope(self._session_factory, "删除物品快照") as session:
            row = session.get(ItemSnapshot, owner)
            if row is not None:
                session.delete(row)
                session.commit()

    def draw_item(
        self, session: Session, owner: str, rng: Optional[random.Random] = None
    ) -> ItemStack:
        """
        Take one random item out of ``owner``'s snapshot inside the caller's transaction.

        Raises:
            Empty: no snapshot, or every slot is empty
            StaleWrite: the snapshot changed underneath us
        """
        row = session.get(ItemSnapshot, owner, with_for_update=True)
        if row is None:
            raise Empty(f"{owner} has no stored items")

        items = load_slots(row.items)
        slot = pick_slot(items, rng)
        if slot is None:
            raise Empty(f"No items left for {owner}")

        remaining, drawn = take_one(items, slot)
        result = session.execute(
            update(ItemSnapshot)
            .where(ItemSnapshot.owner == owner, ItemSnapshot.version == row.version)
            .values(
                items=dump_slots(remaining),
                updated_at=now_ms(),
                version=row.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWrite(owner)

        logger.debug(f"从 {owner} 的物品中抽出第 {slot} 格: {drawn.display_name}")
        return drawn
