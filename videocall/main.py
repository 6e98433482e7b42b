# main.py
import argparse
import asyncio
import logging
import os

from .call_client import VideoCallClient
from .config import CallConfig
from .core.errors import VideoCallError

logger = logging.getLogger("videocall")


async def run_client(config: CallConfig, name: str, peer: str = None, auto_answer: bool = False):
    client = VideoCallClient(config)
    done = asyncio.Event()

    @client.on("registered")
    def on_registered(username):
        logger.info("Registered as %s", username)

    @client.on("incoming_call")
    async def on_incoming_call(caller):
        if auto_answer:
            logger.info("Answering call from %s", caller)
            await client.accept_incoming()
        else:
            logger.info("Rejecting call from %s (start with --auto-answer to pick up)", caller)
            await client.reject_incoming()

    @client.on("call_established")
    def on_call_established(other):
        logger.info("In a call with %s", other)

    @client.on("call_ended")
    def on_call_ended(reason):
        logger.info("Call ended: %s", reason)
        if peer:
            done.set()

    @client.on("disconnected")
    def on_disconnected():
        done.set()

    try:
        await client.connect()
        await client.register(name)
        if peer:
            await client.place_call(peer)
        await done.wait()
    finally:
        await client.close()


def main():
    parser = argparse.ArgumentParser(description="Janus videocall client")
    parser.add_argument("--server", default=None, help="Janus WebSocket URL (ws:// or wss://)")
    parser.add_argument("--name", default=None, help="Username to register")
    parser.add_argument("--call", default=None, help="Peer to call once registered")
    parser.add_argument("--auto-answer", action="store_true", help="Accept incoming calls")
    parser.add_argument("--camera", action="append", default=None, help="Capture device (repeatable)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = CallConfig.from_env(server_uri=args.server, camera_devices=args.camera)
    # Fallback to the environment if not given as an argument
    name = args.name or os.getenv("VIDEOCALL_USERNAME", "python-client")

    logger.info("Starting %s against %s", name, config.server_uri)
    try:
        asyncio.run(run_client(config, name, args.call, args.auto_answer))
    except VideoCallError as e:
        logger.error("%s: %s", e.kind, e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down.")


if __name__ == "__main__":
    main()
