from .errors import ResourceExhausted
from .host import HostEnvironment

MAX_PORT = 65535


def find_available_port(host: HostEnvironment, start: int, window: int | None = None) -> int:
    """
    Returns the lowest port >= start that nothing on the host is bound to.

    Live socket state is read on every call, so a port claimed by a container
    started after a previous call is skipped. At most `window` ports are checked.
    """
    if not 1 <= start <= MAX_PORT:
        raise ValueError(f"Port out of range: {start}")

    window = window or host.settings.PORT_SCAN_WINDOW
    last = min(start + window - 1, MAX_PORT)

    bound = host.bound_ports()
    for port in range(start, last + 1):
        if port not in bound:
            return port

    raise ResourceExhausted(f"No free port in {start}-{last}")
