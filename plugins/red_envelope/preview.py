"""
物品红包预览，仅保存在内存中

创建物品红包时复制一份发送者的物品，用于展示；与抽取逻辑无关
"""

import threading
from typing import Callable, Dict, List, Optional

from nonebot.log import logger

from .models import ItemStack


class PreviewCache:
    def __init__(self):
        self._previews: Dict[str, List[ItemStack]] = {}
        self._lock = threading.Lock()

    def save(self, envelope_id: str, items: List[ItemStack]) -> None:
        if not envelope_id or not items:
            return
        with self._lock:
            self._previews[envelope_id] = list(items)
        logger.debug(f"保存红包预览: {envelope_id} 物品数: {len(items)}")

    def get(self, envelope_id: str) -> Optional[List[ItemStack]]:
        with self._lock:
            items = self._previews.get(envelope_id)
            return list(items) if items is not None else None

    def remove(self, envelope_id: str) -> None:
        with self._lock:
            self._previews.pop(envelope_id, None)

    def cleanup(self, is_valid: Callable[[str], bool]) -> int:
        """Drop previews whose envelope is gone or no longer claimable"""
        with self._lock:
            envelope_ids = list(self._previews)

        stale = [envelope_id for envelope_id in envelope_ids if not is_valid(envelope_id)]
        with self._lock:
            for envelope_id in stale:
                self._previews.pop(envelope_id, None)

        if stale:
            logger.debug(f"清理过期预览: {len(stale)} 个")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._previews.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._previews)
