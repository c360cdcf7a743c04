from typing import List, Optional

from nonebot import get_driver, get_plugin_config, on_command, require
from nonebot.adapters.satori import Message, MessageEvent
from nonebot.exception import MatcherException
from nonebot.log import logger
from nonebot.matcher import Matcher
from nonebot.params import CommandArg
from nonebot.permission import SUPERUSER
from nonebot.utils import run_sync

require("nonebot_plugin_localstore")
require("nonebot_plugin_apscheduler")

from nonebot_plugin_apscheduler import scheduler  # noqa: E402

from .. import monetary  # noqa: E402

from .config import Config  # noqa: E402
from .database import init_database  # noqa: E402
from .exceptions import (  # noqa: E402
    AlreadyClaimed,
    Empty,
    InsufficientBalance,
    Invalid,
    InvalidRequest,
    ItemsLocked,
    LedgerUnavailable,
    NotFound,
)
from .item_storage import ItemStorage  # noqa: E402
from .ledger import MonetaryLedger  # noqa: E402
from .messages import Messages  # noqa: E402
from .models import (  # noqa: E402
    ClaimResult,
    Envelope,
    EnvelopeCompletionInfo,
    EnvelopeKind,
    ItemStack,
    Record,
    Snapshot,
    now_ms,
)
from .service import RedEnvelopeService  # noqa: E402
from .store import EnvelopeStore  # noqa: E402


plugin_config = get_plugin_config(Config)

_service: Optional[RedEnvelopeService] = None


def get_service() -> RedEnvelopeService:
    global _service
    if _service is None:
        session_factory = init_database(plugin_config.red_envelope_database_url)
        _service = RedEnvelopeService(
            store=EnvelopeStore(
                session_factory, plugin_config.red_envelope_max_attempts
            ),
            item_storage=ItemStorage(
                session_factory, plugin_config.red_envelope_item_slots
            ),
            ledger=MonetaryLedger(),
            config=plugin_config,
        )
    return _service


@get_driver().on_startup
async def init():
    get_service()
    logger.info("红包插件初始化完成")


@scheduler.scheduled_job(id="red_envelope_expire", trigger="interval", minutes=5)
async def handle_expire_job():
    try:
        count = await run_sync(get_service().refund_expired_envelopes)()
        if count > 0:
            logger.info(f"已处理 {count} 个过期红包")
    except Exception as e:
        logger.exception(f"处理过期红包时发生错误: {e}")


@scheduler.scheduled_job(id="red_envelope_settle", trigger="interval", minutes=1)
async def handle_settle_job():
    try:
        count = await run_sync(get_service().settle_pending_credits)()
        if count > 0:
            logger.info(f"已补发 {count} 笔红包金额")
    except Exception as e:
        logger.exception(f"补发红包金额时发生错误: {e}")


@scheduler.scheduled_job(id="red_envelope_preview", trigger="interval", minutes=5)
async def handle_preview_job():
    get_service().cleanup_previews()


create_cmd = on_command("发红包", aliases={"拼手气红包"}, priority=10, block=True)
average_cmd = on_command("发平分红包", priority=10, block=True)
item_cmd = on_command("发物品红包", priority=10, block=True)
claim_cmd = on_command("抢红包", aliases={"领红包"}, priority=10, block=True)
list_cmd = on_command("红包列表", aliases={"查看红包"}, priority=10, block=True)
delete_cmd = on_command("删红包", permission=SUPERUSER, priority=10, block=True)
check_cmd = on_command("查红包", aliases={"红包详情"}, priority=10, block=True)
store_cmd = on_command("存物品", priority=10, block=True)
clear_items_cmd = on_command("清空物品", priority=10, block=True)
items_cmd = on_command("我的物品", priority=10, block=True)


def _get_channel_id(event: MessageEvent) -> Optional[str]:
    if hasattr(event, "channel") and event.channel:
        return event.channel.id
    return None


def _format_duration(seconds: int) -> str:
    """Format duration in a human-readable Chinese format."""
    if seconds < 60:
        return f" {seconds} 秒"
    elif seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        if secs == 0:
            return f" {minutes} 分钟"
        return f" {minutes} 分 {secs} 秒"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        if minutes == 0:
            return f" {hours} 小时"
        return f" {hours} 小时 {minutes} 分钟"


def _expire_hint() -> str:
    seconds = plugin_config.red_envelope_expire_seconds
    if seconds <= 0:
        return ""
    return Messages.EXPIRE_HINT.format(hours=round(seconds / 3600, 1))


async def _handle_create(
    matcher: Matcher, event: MessageEvent, text: str, kind: EnvelopeKind, usage: str
):
    user_id = event.get_user_id()
    channel_id = _get_channel_id(event)
    if not channel_id:
        await matcher.finish(Messages.NOT_IN_CHANNEL)

    parts = text.split()
    if len(parts) < 2:
        await matcher.finish(usage)
    try:
        count = int(parts[-1])
    except ValueError:
        await matcher.finish(usage)
    amount = parts[-2]
    note = " ".join(parts[:-2]).strip() or None

    service = get_service()
    try:
        envelope = await run_sync(service.create_envelope_with_validation)(
            user_id, kind, amount, count, note, channel_id
        )
    except InvalidRequest as e:
        await matcher.finish(Messages.INVALID_REQUEST.format(reason=e))
    except InsufficientBalance:
        balance = await run_sync(monetary.get)(user_id)
        await matcher.finish(Messages.INSUFFICIENT_BALANCE.format(balance=balance))
    except MatcherException:
        raise
    except Exception as e:
        logger.exception(f"创建红包失败: {e}")
        await matcher.finish(Messages.CREATE_FAILED)

    await matcher.finish(
        Messages.CREATE_SUCCESS.format(
            envelope_id=envelope.id[:8],
            kind=Messages.KIND_NAMES[envelope.kind],
            amount=envelope.total_amount,
            count=envelope.count,
        )
        + _expire_hint()
    )


@create_cmd.handle()
async def handle_create(event: MessageEvent, arg: Message = CommandArg()):
    await _handle_create(
        create_cmd,
        event,
        arg.extract_plain_text().strip(),
        EnvelopeKind.RANDOM,
        Messages.CREATE_USAGE,
    )


@average_cmd.handle()
async def handle_create_average(event: MessageEvent, arg: Message = CommandArg()):
    await _handle_create(
        average_cmd,
        event,
        arg.extract_plain_text().strip(),
        EnvelopeKind.AVERAGE,
        Messages.CREATE_AVERAGE_USAGE,
    )


@item_cmd.handle()
async def handle_create_item(event: MessageEvent, arg: Message = CommandArg()):
    user_id = event.get_user_id()
    channel_id = _get_channel_id(event)
    if not channel_id:
        await item_cmd.finish(Messages.NOT_IN_CHANNEL)

    parts = arg.extract_plain_text().strip().split()
    if not parts or not parts[-1].isdigit():
        await item_cmd.finish(Messages.CREATE_ITEM_USAGE)
    count = int(parts[-1])
    note = " ".join(parts[:-1]).strip() or None

    service = get_service()
    try:
        envelope = await run_sync(service.create_item_envelope)(
            user_id, count, note, channel_id
        )
    except InvalidRequest as e:
        await item_cmd.finish(Messages.INVALID_REQUEST.format(reason=e))
    except Empty:
        await item_cmd.finish(Messages.ITEMS_EMPTY)
    except ItemsLocked:
        await item_cmd.finish(Messages.ITEMS_LOCKED)
    except MatcherException:
        raise
    except Exception as e:
        logger.exception(f"创建物品红包失败: {e}")
        await item_cmd.finish(Messages.CREATE_FAILED)

    preview = service.get_preview(envelope.id) or []
    await item_cmd.finish(
        Messages.CREATE_ITEM_SUCCESS.format(
            envelope_id=envelope.id[:8], count=envelope.count, items=len(preview)
        )
        + _expire_hint()
    )


def _format_completion(completion: Optional[EnvelopeCompletionInfo]) -> str:
    if completion is None:
        return ""
    duration = _format_duration(completion.duration_seconds)
    if completion.kind is EnvelopeKind.ITEM:
        return "\n" + Messages.CLAIM_ITEM_COMPLETE.format(
            creator=completion.creator_id, duration=duration
        )
    return "\n" + Messages.CLAIM_COMPLETE.format(
        creator=completion.creator_id,
        duration=duration,
        lucky_king=completion.lucky_king_id,
        lucky_amount=completion.lucky_king_amount,
    )


def _format_claim(result: ClaimResult) -> str:
    if result.item is not None:
        text = Messages.CLAIM_ITEM_SUCCESS.format(
            item=result.item.display_name, amount=result.item.amount
        )
    else:
        text = Messages.CLAIM_SUCCESS.format(amount=result.amount)
    return text + _format_completion(result.completion)


def _format_pending(error: LedgerUnavailable) -> str:
    # The claim is recorded, the credit follows later; completion still counts
    return Messages.CLAIM_PENDING.format(amount=error.record.amount) + _format_completion(
        error.completion
    )


@claim_cmd.handle()
async def handle_claim(event: MessageEvent, arg: Message = CommandArg()):
    user_id = event.get_user_id()
    channel_id = _get_channel_id(event)
    if not channel_id:
        await claim_cmd.finish(Messages.NOT_IN_CHANNEL)

    text = arg.extract_plain_text().strip()
    service = get_service()

    try:
        if text:
            envelope = await run_sync(service.resolve)(text)
        else:
            active = await run_sync(service.list_active)(channel_id)
            if not active:
                await claim_cmd.finish(Messages.CLAIM_NO_ACTIVE)
            envelope = active[0]

        result = await run_sync(service.claim)(envelope.id, user_id)
    except NotFound:
        await claim_cmd.finish(Messages.CLAIM_NOT_FOUND)
    except Invalid:
        await claim_cmd.finish(Messages.CLAIM_INVALID)
    except AlreadyClaimed:
        await claim_cmd.finish(Messages.CLAIM_ALREADY)
    except Empty:
        await claim_cmd.finish(Messages.CLAIM_EMPTY)
    except InvalidRequest as e:
        await claim_cmd.finish(Messages.INVALID_REQUEST.format(reason=e))
    except LedgerUnavailable as e:
        await claim_cmd.finish(_format_pending(e))
    except MatcherException:
        raise
    except Exception as e:
        logger.exception(f"抢红包时发生错误: {e}")
        await claim_cmd.finish(Messages.CLAIM_FAILED)

    await claim_cmd.finish(_format_claim(result))


@list_cmd.handle()
async def handle_list(event: MessageEvent):
    channel_id = _get_channel_id(event)
    if not channel_id:
        await list_cmd.finish(Messages.NOT_IN_CHANNEL)

    envelopes = await run_sync(get_service().list_active)(channel_id)
    if not envelopes:
        await list_cmd.finish(Messages.LIST_EMPTY)

    items = [
        Messages.LIST_ITEM.format(
            id=envelope.id[:8],
            kind=Messages.KIND_NAMES[envelope.kind],
            note=envelope.note or "红包",
            amount=envelope.total_amount,
            count=envelope.count,
        )
        for envelope in envelopes
    ]
    await list_cmd.finish(
        Messages.LIST_HEADER.format(count=len(items)) + "\n" + "\n".join(items)
    )


@delete_cmd.handle()
async def handle_delete(arg: Message = CommandArg()):
    text = arg.extract_plain_text().strip()
    if not text:
        await delete_cmd.finish(Messages.DELETE_USAGE)

    service = get_service()
    try:
        envelope = await run_sync(service.resolve)(text)
        await run_sync(service.delete_envelope)(envelope.id)
    except (NotFound, InvalidRequest):
        await delete_cmd.finish(Messages.CLAIM_NOT_FOUND)

    await delete_cmd.finish(Messages.DELETE_SUCCESS.format(envelope_id=envelope.id[:8]))


def _format_detail(envelope: Envelope, records: List[Record], now: int) -> str:
    if envelope.closed:
        status = "closed"
    elif envelope.is_expired(now):
        status = "expired"
    else:
        status = "open"

    lines = [
        Messages.CHECK_DETAIL.format(
            envelope_id=envelope.id[:8],
            kind=Messages.KIND_NAMES[envelope.kind],
            note=envelope.note or "红包",
            sender=envelope.sender,
            amount=envelope.total_amount,
            claimed=len(records),
            count=envelope.count,
            status=Messages.STATUS_NAMES[status],
        )
    ]
    if not records:
        lines.append(Messages.CHECK_NO_RECORD)
    for record in records:
        lines.append(
            Messages.CHECK_RECORD.format(claimant=record.claimant, amount=record.amount)
        )
    return "\n".join(lines)


@check_cmd.handle()
async def handle_check(arg: Message = CommandArg()):
    text = arg.extract_plain_text().strip()
    if not text:
        await check_cmd.finish(Messages.CHECK_USAGE)

    service = get_service()
    try:
        envelope = await run_sync(service.resolve)(text)
        records = await run_sync(service.get_records)(envelope.id)
    except (NotFound, InvalidRequest):
        await check_cmd.finish(Messages.CLAIM_NOT_FOUND)

    await check_cmd.finish(_format_detail(envelope, records, now_ms()))


def _format_items(snapshot: Optional[Snapshot]) -> str:
    if snapshot is None or not snapshot.occupied_slots:
        return Messages.ITEMS_EMPTY
    lines = [Messages.ITEMS_HEADER.format(count=len(snapshot.occupied_slots))]
    for slot in snapshot.occupied_slots:
        stack = snapshot.items[slot]
        lines.append(
            Messages.ITEMS_LINE.format(
                slot=slot + 1, item=stack.display_name, amount=stack.amount
            )
        )
    return "\n".join(lines)


@store_cmd.handle()
async def handle_store(event: MessageEvent, arg: Message = CommandArg()):
    user_id = event.get_user_id()
    parts = arg.extract_plain_text().strip().split()
    if not parts or len(parts) > 2:
        await store_cmd.finish(Messages.STORE_USAGE)
    if len(parts) == 2 and (not parts[1].isdigit() or int(parts[1]) <= 0):
        await store_cmd.finish(Messages.STORE_USAGE)
    stack = ItemStack(item_id=parts[0], amount=int(parts[1]) if len(parts) == 2 else 1)

    try:
        snapshot = await run_sync(get_service().item_storage.add_item)(user_id, stack)
    except ItemsLocked:
        await store_cmd.finish(Messages.ITEMS_LOCKED)
    except InvalidRequest as e:
        await store_cmd.finish(Messages.INVALID_REQUEST.format(reason=e))
    except MatcherException:
        raise
    except Exception as e:
        logger.exception(f"存放物品失败: {e}")
        await store_cmd.finish(Messages.STORE_FAILED)

    await store_cmd.finish(
        Messages.STORE_SUCCESS.format(
            item=stack.display_name,
            amount=stack.amount,
            slots=len(snapshot.occupied_slots),
        )
    )


@clear_items_cmd.handle()
async def handle_clear_items(event: MessageEvent):
    try:
        await run_sync(get_service().item_storage.clear_items)(event.get_user_id())
    except ItemsLocked:
        await clear_items_cmd.finish(Messages.ITEMS_LOCKED)
    await clear_items_cmd.finish(Messages.ITEMS_CLEARED)


@items_cmd.handle()
async def handle_items(event: MessageEvent):
    snapshot = await run_sync(get_service().item_storage.get_snapshot)(
        event.get_user_id()
    )
    await items_cmd.finish(_format_items(snapshot))
