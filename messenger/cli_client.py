#!/usr/bin/env python3
"""
CLI Client for the end-to-end encrypted messenger

Provides a command-line interface for:
- Account registration, login and key backup
- Sending and fetching encrypted messages through the relay
- Local encrypted message history
- An interactive chat with background polling
"""

import asyncio
import sys
import getpass
import logging
import argparse
from datetime import datetime
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from ratchet.primitives import b64encode

from .account import Account, AccountManager
from .config import Settings, configure_logging, normalize_server_url
from .errors import MessengerError
from .establishment import SessionEstablishment
from .pipeline import FetchReport, MessagePipeline
from .relay_client import RelayClient
from .sessions import SessionDirectory
from .storage import LocalStore

logger = logging.getLogger(__name__)

SERVER_URL_KEY = "server_url"
POLL_INTERVAL = 3.0


def _format_time(timestamp: Optional[str]) -> str:
    if not timestamp:
        return "--:--"
    try:
        return datetime.fromisoformat(timestamp).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return timestamp


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, settings: Settings, store: LocalStore):
        """
        Args:
            settings: Runtime settings
            store: Unlocked local storage
        """
        self.settings = settings
        self.store = store
        self.accounts = AccountManager(store)
        self.sessions = SessionDirectory(store, settings.max_cached_keys)
        self.relay: Optional[RelayClient] = None
        self.current_chat: Optional[str] = None
        self.running = False
        self._stopped: Optional[asyncio.Event] = None

    def server_url(self, account: Optional[Account] = None) -> str:
        url = self.settings.server_url or self.store.get_config(SERVER_URL_KEY)
        if account is not None and not self.settings.server_url:
            url = account.server_url or url
        if not url:
            raise MessengerError("No server configured. Run 'set-server --url <url>' first.")
        return normalize_server_url(url)

    def connect(self, account: Optional[Account] = None) -> RelayClient:
        if self.relay is None:
            self.relay = RelayClient(self.server_url(account), timeout=self.settings.http_timeout)
        return self.relay

    def pipeline(self, account: Account) -> MessagePipeline:
        relay = self.connect(account)
        return MessagePipeline(
            self.store, relay,
            sessions=self.sessions,
            establishment=SessionEstablishment(relay, self.settings.max_cached_keys),
            accounts=self.accounts
        )

    async def close(self):
        if self.relay is not None:
            await self.relay.aclose()
            self.relay = None
        self.store.close()

    # Account commands

    def set_server(self, url: str):
        self.store.set_config(SERVER_URL_KEY, normalize_server_url(url))
        print(f"Server URL set to: {self.store.get_config(SERVER_URL_KEY)}")

    async def register(self, username: str):
        relay = self.connect()
        account = await self.accounts.register(username, relay, relay.server_url)
        self.accounts.login(username)
        print(f"Registration successful! Welcome, {account.username}")
        print(f"User ID: {account.user_id}  Device ID: {account.device_id}")

    def login(self, username: str):
        account = self.accounts.login(username)
        print(f"Logged in as {account.username}")

    def logout(self):
        self.accounts.logout()
        print("Logged out")

    def export_keys(self, output: str):
        account = self.accounts.current()
        self.accounts.export_keys(account.username, Path(output))
        print(f"Keys exported to {output}")
        print("WARNING: this file contains your private keys. Keep it safe.")

    def import_keys(self, input_path: str):
        account = self.accounts.import_keys(Path(input_path))
        print(f"Imported account {account.username}")

    def info(self):
        account = self.accounts.current()
        print("=" * 50)
        print(f"Username:     {account.username}")
        print(f"User ID:      {account.user_id}")
        print(f"Device ID:    {account.device_id}")
        print(f"Server:       {account.server_url}")
        print(f"Identity key: {b64encode(account.identity_public)}")
        print(f"Sessions:     {len(self.sessions.peers(account.username))}")
        print(f"Messages:     {self.store.count_messages(account.username)}")
        print("=" * 50)

    # Messaging commands

    async def send_message(self, peer: str, message: str):
        account = self.accounts.current()
        await self.pipeline(account).send(account, peer, message)
        print(f"Message sent to {peer}")

    async def fetch_messages(self, account: Optional[Account] = None) -> FetchReport:
        account = account or self.accounts.current()
        report = await self.pipeline(account).fetch(account)
        for received in report.received:
            self.display_message(received.sender, received.content, received.sent_at)
        for sender, error in report.failed:
            print(f"[Failed to process message from {sender or 'unknown'}: {error}]")
        return report

    def display_message(self, sender: str, content: str, sent_at: Optional[str] = None):
        timestamp = _format_time(sent_at) if sent_at else datetime.now().strftime("%H:%M")
        if self.current_chat is None or sender == self.current_chat:
            print(f"[{timestamp}] {sender}: {content}")
        else:
            print(f"[New message from {sender}]: {content}")

    def list_chats(self):
        account = self.accounts.current()
        conversations = self.store.list_conversations(account.username)
        if not conversations:
            print("No conversations yet")
            return
        print("Conversations:")
        for convo in conversations:
            unread = f" ({convo['unread']} unread)" if convo['unread'] else ""
            print(f"  - {convo['peer']}{unread}  [{_format_time(convo['last_timestamp'])}] "
                  f"{convo['last_message'][:40]}")

    def show_history(self, peer: str, limit: int = 50):
        account = self.accounts.current()
        messages = self.store.get_messages(account.username, peer, limit=limit)
        if not messages:
            print(f"No messages with {peer}")
            return
        print(f"--- History with {peer} ---")
        for msg in messages:
            prefix = "You" if msg['is_outgoing'] else peer
            print(f"[{_format_time(msg['timestamp'])}] {prefix}: {msg['content']}")
        print("--- End History ---")
        self.store.mark_read(account.username, peer)

    # Interactive chat

    async def poll_messages(self, account: Account):
        """Background task fetching new messages until stop_polling()"""
        while self.running:
            try:
                await self.fetch_messages(account)
            except MessengerError as e:
                print(f"[Fetch failed: {e}]")
            try:
                await asyncio.wait_for(self._stopped.wait(), POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass

    def start_polling(self, account: Account) -> asyncio.Task:
        self.running = True
        self._stopped = asyncio.Event()
        return asyncio.create_task(self.poll_messages(account))

    async def stop_polling(self, poll_task: asyncio.Task):
        """
        Stop the poll loop and wait for it to finish.

        The task is never cancelled, so a fetch already in progress completes
        and every envelope taken off the relay is decrypted and stored.
        """
        self.running = False
        if self._stopped is not None:
            self._stopped.set()
        await poll_task

    async def run_interactive(self, peer: str):
        """Run interactive chat session with one peer"""
        account = self.accounts.current()
        self.current_chat = peer

        self.show_history(peer, limit=20)
        print(f"Chatting with {peer}. Type '/fetch' to check for messages, '/quit' to leave.")

        session = PromptSession()
        poll_task = self.start_polling(account)
        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(f"[{peer}] > ")
                except (KeyboardInterrupt, EOFError):
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input == "/quit":
                    break
                if user_input == "/fetch":
                    report = await self.fetch_messages(account)
                    if not report.processed:
                        print("No new messages")
                    continue

                try:
                    await self.pipeline(account).send(account, peer, user_input)
                except MessengerError as e:
                    print(f"[Failed to send message: {e}]")
        finally:
            await self.stop_polling(poll_task)
            self.current_chat = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ratchet-messenger",
        description="End-to-end encrypted messenger"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    set_server = subparsers.add_parser("set-server", help="Set the relay URL")
    set_server.add_argument("--url", required=True)

    register = subparsers.add_parser("register", help="Register a new account")
    register.add_argument("-u", "--username", required=True)

    login = subparsers.add_parser("login", help="Log in to a local account")
    login.add_argument("-u", "--username", required=True)

    subparsers.add_parser("logout", help="Forget the logged-in account")

    send = subparsers.add_parser("send", help="Send a message")
    send.add_argument("--to", required=True)
    send.add_argument("--message", "-m", required=True)

    subparsers.add_parser("fetch", help="Fetch new messages")
    subparsers.add_parser("chats", help="List conversations")

    history = subparsers.add_parser("history", help="Show history with a user")
    history.add_argument("user")
    history.add_argument("--limit", type=int, default=50)

    chat = subparsers.add_parser("chat", help="Interactive chat with a user")
    chat.add_argument("user")

    export = subparsers.add_parser("export", help="Export account keys")
    export.add_argument("--output", "-o", required=True)

    import_ = subparsers.add_parser("import", help="Import account keys")
    import_.add_argument("--input", "-i", required=True)

    subparsers.add_parser("info", help="Show account information")
    return parser


async def dispatch(client: ChatClient, args: argparse.Namespace):
    command = args.command
    if command == "set-server":
        client.set_server(args.url)
    elif command == "register":
        await client.register(args.username)
    elif command == "login":
        client.login(args.username)
    elif command == "logout":
        client.logout()
    elif command == "send":
        await client.send_message(args.to, args.message)
    elif command == "fetch":
        report = await client.fetch_messages()
        if not report.processed:
            print("No new messages")
    elif command == "chats":
        client.list_chats()
    elif command == "history":
        client.show_history(args.user, args.limit)
    elif command == "chat":
        await client.run_interactive(args.user)
    elif command == "export":
        client.export_keys(args.output)
    elif command == "import":
        client.import_keys(args.input)
    elif command == "info":
        client.info()


async def main(argv=None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    passphrase = settings.passphrase or getpass.getpass("Storage passphrase: ")
    store = LocalStore(settings.db_path)
    client = ChatClient(settings, store)
    try:
        store.unlock(passphrase)
        await dispatch(client, args)
    except (MessengerError, ValueError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
