#!/usr/bin/env python3
"""
CLI Client for the QuickPic relay

Provides a command-line interface for:
- User registration and login with refresh-token rotation
- Friend requests
- Sending envelopes encrypted for a friend's public key
- Fetching, decrypting and acknowledging queued messages
- Local encrypted message history
"""

import asyncio
import sys
import getpass
import logging
from typing import Optional, Dict, List
from datetime import datetime
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.envelope import SealedEnvelope, encrypt, decrypt
from crypto.identity import IdentityKeyPair
from crypto.primitives import (
    deserialize_public_key,
    deserialize_signing_public_key,
    b64decode,
    CryptoError
)
from client.storage import EncryptedStorage

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """Server rejected a request"""

    def __init__(self, status_code: int, detail: str, code: Optional[str] = None):
        super().__init__(f"{detail} ({status_code})")
        self.status_code = status_code
        self.detail = detail
        self.code = code


class ChatClient:
    """
    End-to-end encrypted client for the relay.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8080",
        http_client: Optional[httpx.AsyncClient] = None,
        storage_dir: str = "client_data"
    ):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the relay
            http_client: Preconfigured client (tests pass one bound to the app)
            storage_dir: Directory for encrypted local storage
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url)
        self.storage_dir = storage_dir
        self.username: Optional[str] = None
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.identity: Optional[IdentityKeyPair] = None
        self.storage: Optional[EncryptedStorage] = None
        self.running = False
        self.current_chat: Optional[str] = None

    async def register(self, username: str, password: str) -> Dict:
        """
        Register a new account with a freshly generated identity key pair.
        """
        identity = IdentityKeyPair()
        data = await self._post("/auth/register", {
            "username": username,
            "password": password,
            "public_key": identity.public_b64,
            "signing_key": identity.signing_b64
        }, authenticated=False)

        self.identity = identity
        self._open_storage(username, password)
        self.storage.save_keys(identity.to_dict())
        self._set_tokens(data)
        self.username = data["user"]["username"]
        return data["user"]

    async def login(self, username: str, password: str) -> Dict:
        """
        Login with an existing account. The identity key pair must already be
        in local storage; it never leaves this device.
        """
        data = await self._post("/auth/login", {
            "username": username,
            "password": password
        }, authenticated=False)

        self._open_storage(username, password)
        keys = self.storage.load_keys()
        if keys is None:
            raise ClientError(0, "No identity key stored on this device for this user")
        self.identity = IdentityKeyPair.from_dict(keys)
        self._set_tokens(data)
        self.username = data["user"]["username"]
        return data["user"]

    async def resume(self, username: str, password: str) -> bool:
        """
        Continue a previous session from the refresh token kept in local
        storage, without sending the password to the server.

        Returns:
            False if there is no stored session or the server refused it
        """
        self._open_storage(username, password)
        keys = self.storage.load_keys()
        token = self.storage.load_refresh_token()
        if keys is None or token is None:
            return False

        try:
            data = await self._post("/auth/refresh", {"refresh_token": token}, authenticated=False)
        except ClientError as e:
            if e.status_code != 401:
                raise
            self.storage.save_refresh_token(None)
            return False

        self.identity = IdentityKeyPair.from_dict(keys)
        self._set_tokens(data)
        self.username = data["user"]["username"]
        return True

    async def refresh(self):
        """Rotate the refresh token"""
        if not self.refresh_token:
            raise ClientError(401, "Not logged in")
        data = await self._post("/auth/refresh", {"refresh_token": self.refresh_token}, authenticated=False)
        self._set_tokens(data)

    async def logout(self):
        if self.refresh_token:
            await self._post("/auth/logout", {"refresh_token": self.refresh_token}, authenticated=False)
        self.access_token = None
        self.refresh_token = None
        if self.storage:
            self.storage.save_refresh_token(None)

    async def logout_all(self) -> int:
        """Revoke the refresh tokens of every device signed in to this account"""
        data = await self._post("/auth/logout-all", {})
        self.access_token = None
        self.refresh_token = None
        if self.storage:
            self.storage.save_refresh_token(None)
        return data["revoked"]

    async def add_friend(self, username: str) -> Dict:
        return await self._post("/friends/request", {"username": username})

    async def pending_requests(self) -> List[Dict]:
        return await self._get("/friends/requests")

    async def accept_request(self, request_id: str):
        await self._post("/friends/accept", {"request_id": request_id})

    async def reject_request(self, request_id: str):
        await self._post("/friends/reject", {"request_id": request_id})

    async def friends(self) -> List[Dict]:
        return await self._get("/friends")

    async def send_text(self, peer: str, message: str) -> Dict:
        """
        Encrypt a text message for a friend and queue it on the relay.
        """
        friend = await self._find_friend(peer)
        sealed = encrypt(
            message.encode("utf-8"),
            deserialize_public_key(b64decode(friend["public_key"])),
            self.identity.private_key
        )
        result = await self._post("/messages", {
            "to_username": friend["username"],
            "content_type": "text",
            **sealed.to_dict()
        })
        if self.storage:
            self.storage.save_message(friend["username"], message, "sent")
        return result

    async def receive(self) -> List[Dict]:
        """
        Fetch queued messages, decrypt them and acknowledge each one.

        Messages that fail verification or decryption are acknowledged too,
        since they can never be opened; they are logged and skipped.
        """
        received = []
        for item in await self._get("/messages"):
            try:
                sealed = SealedEnvelope.from_dict(item)
                signing_key = item.get("from_signing_key")
                plaintext = decrypt(
                    sealed.data,
                    deserialize_public_key(b64decode(item["from_public_key"])),
                    self.identity.private_key,
                    signature=sealed.signature,
                    signing_public=deserialize_signing_public_key(b64decode(signing_key)) if signing_key else None
                )
            except CryptoError as e:
                logger.warning("Dropping message %s from %s: %s", item["id"], item["from_username"], e)
            else:
                entry = {
                    "id": item["id"],
                    "from": item["from_username"],
                    "content_type": item["content_type"],
                    "content": plaintext,
                    "created_at": item["created_at"]
                }
                if self.storage and item["content_type"] == "text":
                    self.storage.save_message(item["from_username"], plaintext.decode("utf-8", "replace"), "received")
                received.append(entry)
            await self._delete(f"/messages/{item['id']}")
        return received

    async def _find_friend(self, peer: str) -> Dict:
        for friend in await self.friends():
            if friend["username"] == peer.lower():
                return friend
        raise ClientError(403, f"{peer} is not in your friends list", "not_friends")

    def _open_storage(self, username: str, password: str):
        if self.storage:
            self.storage.close()
        self.storage = EncryptedStorage(username, self.storage_dir)
        if not self.storage.unlock(password):
            raise ClientError(0, "Failed to unlock local storage with this password")

    def _set_tokens(self, data: Dict):
        self.access_token = data["access_token"]
        self.refresh_token = data["refresh_token"]
        if self.storage:
            self.storage.save_refresh_token(self.refresh_token)

    async def _request(self, method: str, path: str, authenticated: bool = True, **kwargs):
        """
        Send a request, refreshing the access token once on a 401.
        """
        for attempt in range(2):
            headers = {"Authorization": f"Bearer {self.access_token}"} if authenticated else {}
            response = await self.http_client.request(method, path, headers=headers, **kwargs)
            if response.status_code == 401 and authenticated and attempt == 0 and self.refresh_token:
                await self.refresh()
                continue
            break

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise ClientError(response.status_code, str(body.get("detail", "Unknown error")), body.get("code"))
        return response.json()

    async def _get(self, path: str, **kwargs):
        return await self._request("GET", path, **kwargs)

    async def _post(self, path: str, payload: Dict, **kwargs):
        return await self._request("POST", path, json=payload, **kwargs)

    async def _delete(self, path: str, **kwargs):
        return await self._request("DELETE", path, **kwargs)

    async def show_inbox(self):
        """Fetch and print new messages"""
        messages = await self.receive()
        if not messages:
            print("No new messages")
        for msg in messages:
            timestamp = datetime.fromisoformat(msg["created_at"]).strftime("%H:%M")
            if msg["content_type"] == "text":
                print(f"[{timestamp}] {msg['from']}: {msg['content'].decode('utf-8', 'replace')}")
            else:
                print(f"[{timestamp}] {msg['from']} sent an image ({len(msg['content'])} bytes)")

    async def start_chat(self, peer_username: str):
        """
        Switch the prompt to a friend and print recent history.
        """
        self.current_chat = peer_username.lower()
        messages = self.storage.get_messages(self.current_chat, limit=20) if self.storage else []
        if messages:
            print("\n--- Message History ---")
            for msg in messages:
                prefix = "You" if msg['direction'] == 'sent' else self.current_chat
                timestamp = datetime.fromisoformat(msg['timestamp']).strftime("%H:%M")
                print(f"[{timestamp}] {prefix}: {msg['content']}")
            print("--- End History ---\n")

        print(f"Chatting with {self.current_chat}. Type '/exit' to leave chat, '/help' for commands.")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()
        self._print_help()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_text(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except ClientError as e:
                    print(f"Error: {e.detail}")
                except (KeyboardInterrupt, EOFError):
                    break

        finally:
            self.running = False
            await self.http_client.aclose()
            if self.storage:
                self.storage.close()

    def _print_help(self):
        print("Commands:")
        print("  /add <username> - Send a friend request")
        print("  /requests - List pending friend requests")
        print("  /accept <id> - Accept a friend request")
        print("  /reject <id> - Reject a friend request")
        print("  /friends - List friends")
        print("  /chat <username> - Start chat with a friend")
        print("  /inbox - Fetch new messages")
        print("  /exit - Exit current chat")
        print("  /history - Show conversation list")
        print("  /logout - Log out and quit")
        print("  /logout-all - Log out on every device and quit")
        print("  /quit - Quit application")

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) == 2 else None

        if cmd == "/add" and arg:
            await self.add_friend(arg)
            print(f"Friend request sent to {arg}")
        elif cmd == "/requests":
            requests = await self.pending_requests()
            if not requests:
                print("No pending requests")
            for req in requests:
                print(f"  {req['id']}  from {req['from_user']['username']}")
        elif cmd == "/accept" and arg:
            await self.accept_request(arg)
            print("Request accepted")
        elif cmd == "/reject" and arg:
            await self.reject_request(arg)
            print("Request rejected")
        elif cmd == "/friends":
            friends = await self.friends()
            print("Friends:")
            for friend in friends:
                print(f"  - {friend['username']}")
        elif cmd == "/chat" and arg:
            await self.start_chat(arg)
        elif cmd == "/inbox":
            await self.show_inbox()
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/history":
            if self.storage:
                print("Conversations:")
                for convo in self.storage.list_conversations():
                    print(f"  - {convo}")
        elif cmd == "/logout":
            await self.logout()
            self.running = False
        elif cmd == "/logout-all":
            revoked = await self.logout_all()
            print(f"Revoked {revoked} sessions")
            self.running = False
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            self._print_help()
        else:
            print("Unknown command. Type /help for help.")


async def run(server_url: str):
    """Main entry point"""
    client = ChatClient(server_url)

    print("=" * 50)
    print("QuickPic End-to-End Encrypted Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        try:
            if choice == "1":
                username = input("Username: ").strip()
                password = getpass.getpass("Password: ")
                await client.register(username, password)
                print(f"Registration successful! Welcome, {client.username}")
                break
            elif choice == "2":
                username = input("Username: ").strip()
                password = getpass.getpass("Password: ")
                if await client.resume(username, password):
                    print(f"Session resumed. Welcome back, {client.username}")
                else:
                    await client.login(username, password)
                    print(f"Login successful! Welcome back, {client.username}")
                break
            elif choice == "3":
                await client.http_client.aclose()
                return
            else:
                print("Invalid choice")
        except ClientError as e:
            print(f"Failed: {e.detail}")
        except httpx.HTTPError as e:
            print(f"Connection error: {e}")

    await client.run_interactive()
    print("\nGoodbye!")


def main():
    server_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"
    try:
        asyncio.run(run(server_url))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
