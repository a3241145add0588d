import time


def get_current_timestamp() -> int:
    """Milliseconds since the epoch, used for message and conversation timestamps."""
    return int(time.time() * 1000)
