"""Diagnose what happens during a remoting connection attempt."""

import socket
import sys
import time

from tic80_lib import parsing, protocol


def diagnose_connection(host=protocol.DEFAULT_REMOTE_HOST, port=protocol.DEFAULT_REMOTE_PORT):
    """Show exactly what happens when we open the socket and send hello."""

    print(f"\n=== Connecting to {host}:{port} ===")
    try:
        sock = socket.create_connection((host, port), timeout=3.0)
    except OSError as e:
        print(f"*** CONNECT FAILED: {e} ***")
        print("\nPossible reasons:")
        print("1. TIC-80 is not running")
        print("2. TIC-80 was started without --remoting-port")
        print("3. A firewall blocks the port")
        return
    sock.settimeout(0.2)
    print("Socket connected")

    # See if anything arrives unprompted (push lines)
    print("\n=== Waiting 1 second to see unsolicited output ===")
    time.sleep(1.0)
    try:
        initial = sock.recv(4096)
    except socket.timeout:
        initial = b""
    for line in initial.decode(protocol.ENCODING, errors="replace").splitlines():
        print(f"RX: {line!r}")
    print(f"\nReceived {len(initial)} bytes before hello")

    request = parsing.format_request_line(1, protocol.CMD_HELLO)
    print(f"\n=== Sending {request.rstrip()!r} ===")
    sock.sendall(request.encode(protocol.ENCODING))

    print("\n=== Waiting 5 seconds for hello reply ===")
    start = time.time()
    buffer = ""
    found_reply = False

    while time.time() - start < 5.0 and not found_reply:
        try:
            chunk = sock.recv(4096)
        except socket.timeout:
            continue
        if not chunk:
            print("*** CONNECTION CLOSED BY REMOTE ***")
            break

        buffer += chunk.decode(protocol.ENCODING, errors="replace")
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            print(f"RX: {line.rstrip()!r}")
            response = parsing.parse_response_line(line)
            if response is None or response.id != 1:
                continue
            found_reply = True
            banner = parsing.decode_string(response.data)
            print(f"\n*** REPLY: {response.status} {banner!r} ***")
            if parsing.is_expected_hello(banner):
                print("*** PROTOCOL OK ***")
            else:
                print(f"*** UNEXPECTED BANNER (want {protocol.HELLO_BANNER_V1!r}) ***")

    if not found_reply:
        print("\n*** NO HELLO REPLY ***")

    sock.close()
    print("\nSocket closed")

if __name__ == "__main__":
    host = sys.argv[1] if len(sys.argv) > 1 else protocol.DEFAULT_REMOTE_HOST
    port = int(sys.argv[2]) if len(sys.argv) > 2 else protocol.DEFAULT_REMOTE_PORT
    diagnose_connection(host, port)
