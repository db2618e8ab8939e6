#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Messaging

Provides a command-line interface for:
- Creating the device identity and printing its device id
- Storing contacts by nickname
- Interactive encrypted messaging, synced to our own device via the self-mailbox
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from .client import ChatClient
from .config import ClientConfig
from .errors import ClientError
from .sessions import peer_identity_key
from .storage import SqliteStore

logger = logging.getLogger(__name__)

CONTACT_PREFIX = "friends/"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="e2e-chat", description="End-to-end encrypted messaging client")
    parser.add_argument("-f", "--storage", help="database for keys and sessions")
    parser.add_argument("-a", "--app-storage", help="database for contacts")
    parser.add_argument("-s", "--server", help="relay base URL")
    parser.add_argument("--encrypted", action="store_true", help="prompt for a storage passphrase")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init", help="create the identity and print the device id")

    add = commands.add_parser("add", help="store a contact")
    add.add_argument("device_id")
    add.add_argument("nick")

    send = commands.add_parser("send", help="chat with a contact")
    send.add_argument("-t", "--to", required=True, metavar="NICK")
    return parser


def load_config(args: argparse.Namespace) -> ClientConfig:
    """Environment defaults overridden by command line options"""
    config = ClientConfig.from_env()
    if args.storage:
        config.storage_path = args.storage
    if args.app_storage:
        config.app_storage_path = args.app_storage
    if args.server:
        config.server_url = args.server
    if args.encrypted and config.passphrase is None:
        config.passphrase = getpass.getpass("Storage passphrase: ")
    return config


async def print_messages(client: ChatClient):
    """Print decrypted messages as they arrive"""
    async for sender, plaintext in client.messages():
        text = plaintext.decode("utf-8", errors="replace")
        if sender == client.device_id:
            print(f"> self {text}")
        else:
            print(f"> {sender} {text}")


async def chat(client: ChatClient, peer_id: str):
    """
    Read lines and send each one to the peer and to ourselves.

    Args:
        client: Connected client
        peer_id: Device id of the contact
    """
    receiver = asyncio.create_task(client.run())
    printer = asyncio.create_task(print_messages(client))
    session = PromptSession()

    print("Type a message and press enter. '/quit' leaves.")
    try:
        while True:
            if receiver.done():
                receiver.result()
                print("Relay connection closed")
                return

            try:
                with patch_stdout():
                    line = await session.prompt_async("> ")
            except (EOFError, KeyboardInterrupt):
                break

            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break

            await client.send_to([client.device_id, peer_id], line)
    finally:
        receiver.cancel()
        printer.cancel()
        await asyncio.gather(receiver, printer, return_exceptions=True)


async def run_command(args: argparse.Namespace, config: ClientConfig) -> int:
    if args.command == "add":
        peer_identity_key(args.device_id)
        app_store = SqliteStore(config.app_storage_path, config.passphrase)
        try:
            app_store.set_item(f"{CONTACT_PREFIX}{args.nick}", args.device_id)
        finally:
            app_store.close()
        print(f"Added {args.nick}")
        return 0

    client = ChatClient(config)
    try:
        if args.command == "init":
            print(client.device_id)
            return 0

        app_store = SqliteStore(config.app_storage_path, config.passphrase)
        try:
            peer_id = app_store.get_item(f"{CONTACT_PREFIX}{args.to}")
        finally:
            app_store.close()
        if peer_id is None:
            print(f"Unknown contact: {args.to}", file=sys.stderr)
            return 1

        await chat(client, peer_id)
        return 0
    finally:
        await client.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    try:
        config = load_config(args)
        return asyncio.run(run_command(args, config))
    except ClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
