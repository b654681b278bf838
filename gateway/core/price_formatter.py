"""
价格格式化工具
响应头与日志中使用的美元 / 积分字符串
"""


def format_usd(usd: float) -> str:
    """
    格式化美元金额为 6 位小数（X-Total-Cost-Usd 响应头）

    Examples:
        >>> format_usd(0.00983)
        '0.009830'
        >>> format_usd(0)
        '0.000000'
    """
    return f"{float(usd):.6f}"


def format_credits(credits: float) -> str:
    """
    格式化积分为 1 位小数（X-Credits-Used 响应头）

    Examples:
        >>> format_credits(9.5)
        '9.5'
        >>> format_credits(0)
        '0.0'
    """
    return f"{float(credits):.1f}"


def format_rate_with_unit(rate: float, unit: str) -> str:
    """
    格式化单价并包含单位（日志展示）

    Examples:
        >>> format_rate_with_unit(0.0043, 'min')
        '$0.00430 / min'
        >>> format_rate_with_unit(0.59, '1M tokens')
        '$0.590 / 1M tokens'
    """
    if rate < 0.01:
        price = f"${rate:.5f}"
    elif rate < 1:
        price = f"${rate:.3f}"
    else:
        price = f"${rate:.2f}"
    return f"{price} / {unit}"
