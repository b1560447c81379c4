import math

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB", "EB")


def readable_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 B"
    exponent = min(int(math.floor(math.log(size_bytes, 1024))), len(SIZE_UNITS) - 1)
    if exponent == 0:
        return f"{size_bytes} B"
    return f"{round(size_bytes / math.pow(1024, exponent), 2)} {SIZE_UNITS[exponent]}"


def readable_quota(quota_bytes: int, remaining_bytes: int) -> str:
    """Remaining traffic of an account, where a zero or negative quota means unlimited."""
    if quota_bytes <= 0:
        return "Unlimited"
    return readable_size(remaining_bytes)
