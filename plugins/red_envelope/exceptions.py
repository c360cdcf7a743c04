"""
红包异常

claim / create 的失败类型集中在这里，命令层按类型映射到提示文本
"""


class RedEnvelopeError(Exception):
    """所有红包异常的基类"""

    retryable = False


class InvalidRequest(RedEnvelopeError):
    """金额、份数或备注不合法，未产生任何副作用"""


class InsufficientBalance(RedEnvelopeError):
    """余额不足"""

    def __init__(self, actor, amount):
        self.actor = actor
        self.amount = amount
        super().__init__(f"{actor} cannot afford {amount}")


class NotFound(RedEnvelopeError):
    """红包不存在"""

    def __init__(self, envelope_id):
        self.envelope_id = envelope_id
        super().__init__(f"Red envelope {envelope_id} not found")


class Invalid(RedEnvelopeError):
    """红包已领完或已过期"""

    def __init__(self, envelope_id, reason: str = "closed"):
        self.envelope_id = envelope_id
        self.reason = reason
        super().__init__(f"Red envelope {envelope_id} is {reason}")


class AlreadyClaimed(RedEnvelopeError):
    """同一个人重复领取"""

    def __init__(self, envelope_id, claimant):
        self.envelope_id = envelope_id
        self.claimant = claimant
        super().__init__(f"{claimant} already claimed {envelope_id}")


class Empty(RedEnvelopeError):
    """物品红包没有可抽取的物品"""


class ItemsLocked(RedEnvelopeError):
    """物品已关联到未结束的红包，不能编辑"""

    def __init__(self, owner, envelope_id=None):
        self.owner = owner
        self.envelope_id = envelope_id
        super().__init__(f"Items of {owner} are locked by {envelope_id}")


class LedgerUnavailable(RedEnvelopeError):
    """余额服务调用失败

    领取时出现表示记录已落库但入账失败，record 不为空，等待对账任务补发
    """

    def __init__(self, message: str, record=None, completion=None):
        self.record = record
        self.completion = completion
        super().__init__(message)


class InternalStoreError(RedEnvelopeError):
    """数据库异常，结果未知，调用方应先查询领取状态再决定是否重试"""

    retryable = True
