#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login (the private key is unlocked locally)
- Encrypted direct messages, one RSA-OAEP encryption per message
- Live delivery of new messages over WebSocket
"""

import argparse
import asyncio
import getpass
import logging
import sys
from datetime import datetime
from typing import Optional

import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from chatcrypto import CryptoError, MessageTooLarge

from .api import APIError, ChatAPI
from .conversation import ChatLine, Conversation
from .identity import IdentityError, IdentitySession, Session
from .storage import SqliteDeviceStore

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /exit - Exit current chat
  /users [search] - List users
  /whoami - Show the signed-in user
  /logout - Sign out and quit
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, server_url: str = "http://localhost:8000", data_dir: str = "client_data"):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the chat server
            data_dir: Directory for device-local data
        """
        self.api = ChatAPI(server_url)
        self.device_store = SqliteDeviceStore(data_dir)
        self.identity = IdentitySession(self.api, self.device_store)
        self.conversation: Optional[Conversation] = None
        self.running = False

    @property
    def session(self) -> Optional[Session]:
        return self.identity.current_session()

    async def register(self, username: str, display_name: str, password: str) -> bool:
        print("Generating your key pair, this can take a moment...")
        try:
            session = await self.identity.register(username, display_name, password)
            await self.api.authenticate(session)
        except (IdentityError, CryptoError, APIError) as e:
            print(f"Registration failed: {e}")
            return False

        print(f"Registration successful! Welcome, {session.display_name}")
        return True

    async def login(self, username: str, password: str) -> bool:
        try:
            session = await self.identity.login(username, password)
            await self.api.authenticate(session)
        except (IdentityError, CryptoError, APIError) as e:
            print(f"Login failed: {e}")
            return False

        print(f"Login successful! Welcome back, {session.display_name}")
        return True

    def _print_line(self, line: ChatLine):
        session = self.session
        peer = self.conversation.peer if self.conversation else None
        if session and line.is_from(session.id):
            prefix = "You"
        else:
            prefix = peer.display_name if peer else line.sender_id
        try:
            timestamp = datetime.fromisoformat(line.created_at).strftime("%H:%M")
        except (TypeError, ValueError):
            timestamp = "--:--"
        print(f"[{timestamp}] {prefix}: {line.text}")

    async def start_chat(self, peer_username: str):
        """
        Open the conversation with a user and show its history.

        Args:
            peer_username: Username to chat with
        """
        session = self.session
        peer = await self.api.find_user_by_username(peer_username)
        if peer is None:
            print(f"No such user: {peer_username}")
            return
        if peer.id == session.id:
            print("You cannot chat with yourself")
            return

        try:
            conversation = Conversation(session, peer, key_manager=self.identity.key_manager)
            conversation.peer_key  # fail early on an unusable key
        except CryptoError as e:
            print(f"Cannot use {peer_username}'s public key: {e}")
            return

        self.conversation = conversation
        records = await self.api.list_messages(session.id, peer.id)
        lines = await conversation.load_async(records)
        if lines:
            print("\n--- Message History ---")
            for line in lines:
                self._print_line(line)
            print("--- End History ---\n")

        print(f"Chatting with {peer.display_name}. Type '/exit' to leave chat, '/help' for commands.")

    async def send_message(self, text: str):
        """Encrypt and send text to the current peer"""
        conversation = self.conversation
        try:
            ciphertext = conversation.prepare_outgoing(text)
        except MessageTooLarge as e:
            print(f"Message not sent: {e}")
            return

        try:
            record = await self.api.insert_message(
                self.session.id, conversation.peer.id, ciphertext
            )
        except APIError as e:
            print(f"Failed to send message: {e}")
            return
        conversation.accept(record)

    async def receive_messages(self):
        """Background task printing pushed messages"""
        try:
            async for record in self.api.subscribe():
                if not self.running:
                    break
                conversation = self.conversation
                if conversation is not None:
                    line = conversation.accept(record)
                    if line is not None:
                        print()
                        self._print_line(line)
                        continue
                if record.recipient_id == self.session.id:
                    sender = await self.api.get_user_by_id(record.sender_id)
                    name = sender.username if sender else record.sender_id
                    print(f"\n[New message from {name}]")
        except APIError as e:
            print(f"\nReceive error: {e}")
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            logger.warning("Push channel closed: %s", e)
            print("\nConnection closed")

    async def list_users(self, query: str = ""):
        users = await self.api.search_users(query, exclude_id=self.session.id)
        if not users:
            print("No users found")
            return
        print("Users:")
        for user in users:
            print(f"  - {user['display_name']} (@{user['username']})")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        prompt = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.conversation:
                        prompt_text = f"[{self.conversation.peer.username}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await prompt.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.conversation:
                        await self.send_message(user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (KeyboardInterrupt, EOFError):
                    break
                except APIError as e:
                    print(f"Server error: {e}")

        finally:
            self.running = False
            receive_task.cancel()
            await self.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.conversation = None
            print("Exited chat")
        elif cmd == "/users":
            await self.list_users(parts[1] if len(parts) == 2 else "")
        elif cmd == "/whoami":
            session = self.session
            print(f"{session.display_name} (@{session.username})")
        elif cmd == "/logout":
            self.identity.logout()
            print("Signed out")
            self.running = False
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def close(self):
        await self.api.aclose()
        self.device_store.close()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    parser.add_argument("--server", default="http://localhost:8000", help="Chat server URL")
    parser.add_argument("--data-dir", default="client_data", help="Directory for device-local data")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())
    client = ChatClient(args.server, args.data_dir)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            display_name = input("Display name: ").strip() or username
            password = getpass.getpass("Password: ")
            if await client.register(username, display_name, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.close()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
