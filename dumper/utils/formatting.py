"""Human-readable sizes and redaction of secrets for log output."""

KB = 1024
MB = 1024 * KB
GB = 1024 * MB


def format_size(size_bytes: int) -> str:
    """
    Format a byte count.

    Below 1 MB sizes are shown in KB, below 1 GB in MB, above that in GB
    with the MB value in parentheses.
    """
    if size_bytes < MB:
        return f"{size_bytes / KB:.2f} KB"
    if size_bytes < GB:
        return f"{size_bytes / MB:.2f} MB"
    return f"{size_bytes / GB:.2f} GB ({size_bytes / MB:.2f} MB)"


def format_transfer(done_bytes: int, total_bytes: int) -> str:
    """Format transferred/total bytes using the unit of the total."""
    if total_bytes < MB:
        return f"{done_bytes / KB:.2f} KB / {total_bytes / KB:.2f} KB"
    if total_bytes < GB:
        return f"{done_bytes / MB:.2f} MB / {total_bytes / MB:.2f} MB"
    return (
        f"{done_bytes / GB:.2f} GB / {total_bytes / GB:.2f} GB "
        f"({done_bytes / MB:.2f} MB / {total_bytes / MB:.2f} MB)"
    )


def format_rate(size_bytes: int, seconds: float) -> str:
    """Throughput as MB/s, or 'n/a' when the duration is too small to measure."""
    if seconds <= 0:
        return 'n/a'
    return f"{size_bytes / MB / seconds:.2f} MB/s"


def redact_uri(uri: str) -> str:
    if not uri:
        return ''
    return '[REDACTED_URI]'


def redact_key(key: str) -> str:
    if not key:
        return ''
    if len(key) <= 4:
        return '[REDACTED]'
    return key[:4] + '...[REDACTED]'
