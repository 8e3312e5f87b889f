"""
Utilities for checking availability of network ports.
"""
import socket

def is_port_free(port: int, host: str = '') -> bool:
    """
    Checks if a TCP port can be bound on the host.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False
