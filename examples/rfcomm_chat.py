#!/usr/bin/env python3
"""
Terminal chat over RFCOMM

Requires PyBluez and a powered Bluetooth adapter. Pair the two machines
first when using the secure service.

Usage:
    python3 examples/rfcomm_chat.py listen [--insecure]
    python3 examples/rfcomm_chat.py connect AA:BB:CC:DD:EE:FF

Type a line and press enter to send it. Ctrl-D or /quit exits.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

import RNS

from btchat import ChatService, NotConnected, IoFailure
from btchat.rfcomm_transport import RFCOMMTransport


def usage():
    print(__doc__)
    return 2


def main(argv):
    if len(argv) < 2 or argv[1] not in ("listen", "connect"):
        return usage()
    if argv[1] == "connect" and len(argv) < 3:
        return usage()

    RNS.loglevel = RNS.LOG_NOTICE

    config = {"name": "Chat", "secure": "no" if "--insecure" in argv else "yes"}
    service = ChatService(RFCOMMTransport(), config)

    service.on_state_changed = lambda state: print(f"* {state.name}")
    service.on_peer_connected = lambda peer, svc: print(f"* connected to {peer} ({svc})")
    service.on_data_received = lambda data: print(f"< {data.decode(errors='replace')}")
    service.on_connection_failed = lambda reason: print(f"* connection failed: {reason}")
    service.on_connection_lost = lambda: print("* connection lost")

    if argv[1] == "listen":
        service.start_listening()
    else:
        service.connect_to(argv[2])

    try:
        for line in sys.stdin:
            line = line.rstrip("\n")
            if line == "/quit":
                break
            if not line:
                continue
            try:
                service.send(line.encode())
            except NotConnected:
                print("* not connected")
            except IoFailure as e:
                print(f"* send failed: {e}")
    except KeyboardInterrupt:
        pass
    finally:
        service.detach()

    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
