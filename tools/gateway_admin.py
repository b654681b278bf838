"""
网关运维工具：IP 黑名单、许可证缓存、试用设备余额

运行方式:
    REDIS_URI="你的redis地址" PYTHONPATH=. uv run python tools/gateway_admin.py block-ip 1.2.3.4 --hours 48
    REDIS_URI="你的redis地址" PYTHONPATH=. uv run python tools/gateway_admin.py unblock-ip 1.2.3.4
    REDIS_URI="你的redis地址" PYTHONPATH=. uv run python tools/gateway_admin.py invalidate-license <license_key>
    REDIS_URI="你的redis地址" PYTHONPATH=. uv run python tools/gateway_admin.py device-balance <device_id>
"""
import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gateway.billing.device_credits import get_device_balance
from gateway.billing.license_cache import get_license_from_cache, invalidate_license_cache
from gateway.rate_limiter import get_rate_limiter
from gateway.storage_adapter import close_storage_adapter, get_storage_adapter
from log import mask_secret


async def block_ip(args):
    limiter = await get_rate_limiter()
    await limiter.block_ip(args.ip, duration_hours=args.hours)
    hours = args.hours if args.hours is not None else "默认"
    print(f"已封禁 {args.ip}（{hours} 小时）")


async def unblock_ip(args):
    limiter = await get_rate_limiter()
    await limiter.unblock_ip(args.ip)
    print(f"已解除封禁 {args.ip}")


async def invalidate_license(args):
    cached = await get_license_from_cache(args.license_key)
    if cached is None:
        print(f"缓存中没有 {mask_secret(args.license_key)}")
        return
    await invalidate_license_cache(args.license_key)
    print(f"已清除 {mask_secret(args.license_key)} 的缓存（valid={cached.is_valid}, credits={cached.credits:.1f}）")


async def device_balance(args):
    balance = await get_device_balance(args.device_id)
    print(f"设备: {args.device_id}")
    print(f"  剩余积分: {balance.credits_remaining:.1f}")
    print(f"  已用积分: {balance.credits_used:.1f}")
    print(f"  总分配:   {balance.total_allocated:g}")
    print(f"  剩余分钟: {balance.minutes_remaining}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="STT edge gateway admin tool")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("block-ip", help="封禁 IP")
    p.add_argument("ip")
    p.add_argument("--hours", type=int, default=None, help="封禁时长（小时），默认读取 IP_BLOCK_HOURS")
    p.set_defaults(handler=block_ip)

    p = sub.add_parser("unblock-ip", help="解除 IP 封禁")
    p.add_argument("ip")
    p.set_defaults(handler=unblock_ip)

    p = sub.add_parser("invalidate-license", help="清除许可证缓存")
    p.add_argument("license_key")
    p.set_defaults(handler=invalidate_license)

    p = sub.add_parser("device-balance", help="查看试用设备余额")
    p.add_argument("device_id")
    p.set_defaults(handler=device_balance)
    return parser


async def main(argv=None):
    args = build_parser().parse_args(argv)
    adapter = await get_storage_adapter()
    if adapter.backend == "memory":
        print("警告: 未设置 REDIS_URI，操作的是进程内存储，退出后即丢失")
    try:
        await args.handler(args)
    finally:
        await close_storage_adapter()


if __name__ == "__main__":
    load_dotenv()
    asyncio.run(main())
