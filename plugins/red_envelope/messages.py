class Messages:
    NOT_IN_CHANNEL = "只能在群聊中使用红包功能哦"
    CREATE_USAGE = "格式错误！用法：发红包 [备注] <金额> <份数>"
    CREATE_AVERAGE_USAGE = "格式错误！用法：发平分红包 [备注] <金额> <份数>"
    CREATE_ITEM_USAGE = "格式错误！用法：发物品红包 [备注] <份数>"
    INVALID_REQUEST = "参数错误：{reason}"
    INSUFFICIENT_BALANCE = "余额不足！你当前有 {balance} 个星之碎片"
    CREATE_FAILED = "创建红包失败，请稍后再试"
    CREATE_SUCCESS = "红包已创建！ID: {envelope_id}，{kind}，金额: {amount}，份数: {count}"
    CREATE_ITEM_SUCCESS = "物品红包已创建！ID: {envelope_id}，份数: {count}，共 {items} 格物品"
    ITEMS_EMPTY = "你还没有存放任何物品"
    ITEMS_LOCKED = "你的物品已经在一个未结束的红包里了"
    EXPIRE_HINT = "，有效期 {hours} 小时"
    KIND_NAMES = {"RANDOM": "拼手气红包", "AVERAGE": "平分红包", "ITEM": "物品红包"}
    LIST_EMPTY = "当前群聊中没有可领取的红包"
    LIST_HEADER = "当前群聊中红包列表（{count} 个）:"
    LIST_ITEM = "{id} | {kind} | {note} | 金额 {amount} | 份数 {count}"
    CLAIM_NOT_FOUND = "未找到该红包"
    CLAIM_NO_ACTIVE = "当前群聊中没有可领取的红包"
    CLAIM_ALREADY = "你已经领过这个红包了"
    CLAIM_INVALID = "这个红包已经被领完或过期了"
    CLAIM_EMPTY = "这个物品红包已经没有物品了"
    CLAIM_FAILED = "抢红包失败，请稍后再试"
    CLAIM_PENDING = "抢到了 {amount} 个星之碎片，但入账暂时失败，稍后会自动补发"
    CLAIM_SUCCESS = "恭喜你抢到 {amount} 个星之碎片！"
    CLAIM_ITEM_SUCCESS = "恭喜你抢到 {item}×{amount}！"
    CLAIM_COMPLETE = "{creator}的红包在{duration}内被抢完，{lucky_king}是手气王（{lucky_amount}）！"
    CLAIM_ITEM_COMPLETE = "{creator}的物品红包在{duration}内被抢完！"
    DELETE_USAGE = "格式错误！用法：删红包 <ID>"
    DELETE_SUCCESS = "红包 {envelope_id} 已删除"
    CHECK_USAGE = "格式错误！用法：查红包 <ID>"
    CHECK_DETAIL = (
        "红包 {envelope_id} | {kind} | {note}\n"
        "发送者: {sender}，金额: {amount}，已领取 {claimed}/{count}，{status}"
    )
    CHECK_RECORD = "{claimant}: {amount}"
    CHECK_NO_RECORD = "还没有人领取"
    STATUS_NAMES = {"open": "可领取", "closed": "已领完", "expired": "已过期"}
    STORE_USAGE = "格式错误！用法：存物品 <物品ID> [数量]"
    STORE_SUCCESS = "已存入 {item}×{amount}，当前占用 {slots} 格"
    ITEMS_CLEARED = "物品已清空"
    ITEMS_HEADER = "你的物品（{count} 格）:"
    ITEMS_LINE = "{slot}. {item}×{amount}"
    STORE_FAILED = "存放物品失败，请稍后再试"
