"""
试用设备积分
以 device_id 标识的试用用户余额，存储键 device_credits:{device_id}，不过期
"""
import json
from typing import Optional

from log import log, mask_secret
from config import get_trial_credit_allocation
from ..core.cost_model import round_to_tenth
from ..models import DeviceBalance
from ..storage_adapter import get_storage_adapter


def _device_key(device_id: str) -> str:
    return f"device_credits:{device_id}"


async def _initialize_device(adapter, device_id: str) -> DeviceBalance:
    """首次见到设备时写入初始额度（仅一次）"""
    allocation = await get_trial_credit_allocation()
    balance = DeviceBalance(credits_remaining=allocation, total_allocated=allocation, credits_used=0.0)
    await adapter.put(_device_key(device_id), json.dumps(balance.to_dict()))
    log.info(f"New device initialized: device={mask_secret(device_id)} credits={allocation}")
    return balance


async def _load_balance(adapter, device_id: str) -> Optional[DeviceBalance]:
    raw = await adapter.get(_device_key(device_id))
    if not raw:
        return None
    balance = DeviceBalance.from_dict(json.loads(raw))
    balance.credits_remaining = round_to_tenth(balance.credits_remaining)
    balance.credits_used = round_to_tenth(balance.credits_used)
    return balance


async def get_device_balance(device_id: str) -> DeviceBalance:
    """
    获取设备余额，不存在则按试用额度初始化

    存储读取失败时返回已耗尽的余额（拒绝服务而不是免费放行）
    """
    try:
        adapter = await get_storage_adapter()
        balance = await _load_balance(adapter, device_id)
        if balance is None:
            return await _initialize_device(adapter, device_id)
        log.debug(
            f"Device balance: device={mask_secret(device_id)} "
            f"remaining={balance.credits_remaining} used={balance.credits_used}"
        )
        return balance
    except Exception as e:
        log.error(f"Failed to get device balance for {mask_secret(device_id)}: {e}")
        allocation = await get_trial_credit_allocation()
        return DeviceBalance(credits_remaining=0.0, total_allocated=allocation, credits_used=allocation)


async def deduct_device_credits(device_id: str, amount: float) -> DeviceBalance:
    """
    扣除设备积分

    余额最低为 0；实际扣除量不超过当前余额，保证 remaining == total_allocated - used。
    先读后写，无锁（同一设备并发扣费可能丢失一次更新）。
    存储错误向上抛出，由调用方记录。
    """
    adapter = await get_storage_adapter()
    current = await _load_balance(adapter, device_id)
    if current is None:
        current = await _initialize_device(adapter, device_id)

    amount = max(0.0, float(amount or 0))
    if amount == 0:
        return current

    applied = min(amount, current.credits_remaining)
    updated = DeviceBalance(
        credits_remaining=round_to_tenth(max(0.0, current.credits_remaining - applied)),
        total_allocated=current.total_allocated,
        credits_used=round_to_tenth(current.credits_used + applied),
    )
    await adapter.put(_device_key(device_id), json.dumps(updated.to_dict()))
    log.info(
        f"Device credits deducted: device={mask_secret(device_id)} amount={amount} "
        f"applied={applied} remaining={updated.credits_remaining}"
    )
    return updated
