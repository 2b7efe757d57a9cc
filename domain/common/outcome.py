"""
状态变更结果 - 三态返回值

每个改变状态的操作返回 Outcome，调用方据此区分：
- APPLIED: 本次调用完成了状态转换
- ALREADY_APPLIED: 目标状态已存在（幂等重入），未产生新的副作用
- REJECTED: 当前状态不允许该操作，记录未被修改
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from domain.common.exceptions import ConflictException


T = TypeVar("T")


class TransitionResult(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    result: TransitionResult
    value: T
    reason: Optional[str] = None

    @classmethod
    def applied(cls, value: T) -> "Outcome[T]":
        return cls(TransitionResult.APPLIED, value)

    @classmethod
    def already_applied(cls, value: T, reason: Optional[str] = None) -> "Outcome[T]":
        return cls(TransitionResult.ALREADY_APPLIED, value, reason)

    @classmethod
    def rejected(cls, value: T, reason: str) -> "Outcome[T]":
        return cls(TransitionResult.REJECTED, value, reason)

    @property
    def is_applied(self) -> bool:
        return self.result is TransitionResult.APPLIED

    @property
    def is_rejected(self) -> bool:
        return self.result is TransitionResult.REJECTED

    def unwrap(self) -> T:
        """返回结果值；REJECTED 时抛出 ConflictException（HTTP 409）"""
        if self.is_rejected:
            raise ConflictException(self.reason or "Operation rejected")
        return self.value
