"""Logging helpers shared by the analysis modules."""

# Warn-once cache (per worker process) to avoid log spam.
_WARN_ONCE: set[str] = set()


def warn_once(logger, key, msg, *args):
    """Log ``msg`` at WARNING level the first time ``key`` is seen in this process."""
    if key in _WARN_ONCE:
        return False
    _WARN_ONCE.add(key)
    logger.warning(msg, *args)
    return True
