import socket
import psutil


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(start: int, attempts: int = 100) -> int:
    """First bindable port at or above `start`."""
    for port in range(start, start + attempts):
        if is_port_free(port):
            return port
    raise OSError(f"No free port found in range {start}-{start + attempts - 1}")


def lan_ip_address() -> str | None:
    """IPv4 address of the first interface that is up and not loopback."""
    stats = psutil.net_if_stats()
    for name, addresses in psutil.net_if_addrs().items():
        if name in stats and not stats[name].isup:
            continue
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith("127."):
                return address.address
    return None


def os_hostname() -> str:
    return socket.gethostname()


def strip_port(host: str | None) -> str | None:
    """`example.com:19000` -> `example.com`; bracketed IPv6 is kept intact."""
    if not host:
        return None
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.split(":")[0]
