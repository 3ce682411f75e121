#!/usr/bin/env python3
"""
CLI for testing BaaSAdapter functionality.

Usage:
    python -m adapter.baas.cli

Raw backend commands:
    entity    - Show an entity with its normalized stats
    like      - Toggle a like for a user
    likes     - Show like count and liked flag
    comment   - Post a comment
    comments  - List comments, newest first

Optimistic client commands (session-gated InteractionStore):
    login / logout  - Open or drop a development session
    mount           - Load an entity into the store and watch it
    toggle          - Optimistic like toggle as the logged-in user
    post            - Optimistic comment as the logged-in user
    refresh         - Refresh watched entity stats
    notifications   - Show recent user notifications
"""

import asyncio
import cmd
import json
import os
import sys
import uuid

from dotenv import load_dotenv

# Ensure backend is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from adapter.baas import (
    BaaSAdapter,
    BaaSError,
    BaaSAuthenticationError,
    BaaSTransientError,
    BaaSValidationError,
    BaaSPermissionError,
    BaaSRateLimitError,
    Comment,
)
from adapter.baas.interceptors import AuthHeaderInterceptor, AuthRequiredInterceptor
from adapter.rate_limiter import create_client_limiter
from core import InteractionConfig, InteractionSnapshot, InteractionStore, StatsRefresher
from services import (
    AUTH_REQUIRED,
    CounterShadow,
    EventBus,
    Notification,
    NotificationCenter,
    SessionGate,
)


load_dotenv()


def _print_verbose_error(e: BaaSError):
    """Print verbose error information."""
    print("\n" + "=" * 60)
    print("✗ ERROR DETAILS")
    print("=" * 60)
    print(f"  Type: {type(e).__name__}")
    print(f"  Kind: {e.kind.value}")
    print(f"  Message: {e}")
    if e.status_code:
        print(f"  Status Code: {e.status_code}")
    if e.code is not None:
        print(f"  Code: {e.code}")

    if e.response_text:
        try:
            error_json = json.loads(e.response_text)
            print("  Response:")
            for key, value in error_json.items():
                if isinstance(value, dict):
                    print(f"    {key}:")
                    for k, v in value.items():
                        print(f"      {k}: {v}")
                else:
                    print(f"    {key}: {value}")
        except (json.JSONDecodeError, TypeError, AttributeError):
            print(f"  Response: {e.response_text[:500]}")

    print("\n  💡 Troubleshooting:")
    if isinstance(e, BaaSAuthenticationError):
        print("     - The session is missing or expired; log in again")
        print("     - Check BAAS_API_KEY if the backend requires a project key")
    elif isinstance(e, BaaSTransientError):
        print("     - Check BAAS_ENDPOINT points at a running backend")
        print("     - Comments sent from the app would be retried with backoff")
    elif isinstance(e, BaaSRateLimitError):
        wait = f"{e.retry_after} seconds" if e.retry_after else "a minute"
        print(f"     - Wait {wait} before retrying")
    elif isinstance(e, BaaSPermissionError):
        print("     - The user may not perform this action (e.g. deleting someone else's comment)")
    elif isinstance(e, BaaSValidationError):
        print("     - Check the entity ID exists and the comment text is 1-1000 characters")
    else:
        print("     - Unexpected backend error, check the server logs")

    print("=" * 60 + "\n")


class BaaSAdapterCLI(cmd.Cmd):
    """Interactive CLI for testing BaaSAdapter."""

    intro = """
╔═══════════════════════════════════════════════════════════════╗
║                    Interactions CLI                            ║
║  Backend: entity, like, likes, comment, comments, status       ║
║  Client:  login, logout, mount, toggle, post, refresh          ║
╚═══════════════════════════════════════════════════════════════╝
"""
    prompt = "vibes> "

    def __init__(self, adapter: BaaSAdapter = None, shadow: CounterShadow = None, feature: str = None):
        super().__init__()
        self.store = None
        if adapter is not None:
            self.adapter = adapter
        else:
            try:
                self.adapter = BaaSAdapter()
                print(f"✓ BaaSAdapter initialized for {self.adapter.endpoint}")
                if not self.adapter.api_key:
                    print("⚠ No BAAS_API_KEY set - sending requests without a project key")
            except Exception as e:
                print(f"✗ Failed to initialize BaaSAdapter: {e}")
                self.adapter = None

        if self.adapter:
            self._build_client(shadow, feature or os.environ.get("CLI_FEATURE", "vibe"))

    def _build_client(self, shadow, feature: str):
        """Wire the session gate, store and refresher around the adapter."""
        limiter = create_client_limiter()
        self.events = EventBus()
        self.events.subscribe(AUTH_REQUIRED, self._on_auth_required)

        self.gate = SessionGate(self.adapter, rate_limiter=limiter, event_bus=self.events)
        self.adapter.add_interceptor(AuthHeaderInterceptor(lambda: self.gate.token))
        self.adapter.add_interceptor(AuthRequiredInterceptor(self.events))

        self.notifications = NotificationCenter()
        self.notifications.subscribe(self._print_notification)

        self.store = InteractionStore(
            self.adapter,
            InteractionConfig.for_feature(feature),
            self.gate,
            shadow=shadow,
            notifications=self.notifications,
        )
        self.refresher = StatsRefresher(self.store, rate_limiter=limiter, session_gate=self.gate)

    def _on_auth_required(self, **payload):
        print("⚠ Login required - use: login <user_id>")

    def _print_notification(self, notification: Notification):
        print(f"[{notification.level.value}] {notification.message}")

    def _print_snapshot(self, snapshot: InteractionSnapshot):
        heart = "♥" if snapshot.has_liked else "♡"
        print(f"\n{snapshot.feature} {snapshot.entity_id}")
        print(f"   {heart} {snapshot.likes_count}  💬 {snapshot.comments_count}")
        if snapshot.hydrated_from_shadow:
            print("   (seeded from counter shadow)")
        for comment in snapshot.comments[:5]:
            marker = "" if comment.status.value == "confirmed" else f" ({comment.status.value})"
            print(f"   - {comment.author_id}: {comment.text[:60]}{marker}")
        print()

    def _print_comment(self, comment: Comment, index: int = None):
        """Pretty print a comment."""
        prefix = f"[{index}] " if index is not None else ""
        timestamp = comment.created_at.strftime("%Y-%m-%d %H:%M:%S")

        text = comment.text.replace("\n", " ")[:100]
        if len(comment.text) > 100:
            text += "..."

        print(f"{prefix}[{timestamp}] {comment.author_id}")
        print(f"   {text}")
        print(f"   ID: {comment.id}")
        print()

    def do_status(self, arg):
        """Show adapter status and configuration."""
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        print("\n=== Interactions Adapter Status ===")
        print(f"Endpoint: {self.adapter.endpoint}")
        print(f"API key: {'set' if self.adapter.api_key else 'not set'}")
        print(f"Timeout: {self.adapter.timeout}s")
        print(f"Interceptors: {', '.join(type(i).__name__ for i in self.adapter.interceptors)}")
        for category in sorted(self.adapter.rate_limiter.configs):
            remaining = self.adapter.rate_limiter.get_remaining_requests(category)
            limit = self.adapter.rate_limiter.configs[category].requests_per_window
            print(f"  {category}: {remaining}/{limit} remaining")
        print()

    def do_entity(self, arg):
        """
        Show an entity and its normalized stats.

        Usage: entity <entity_id>
        """
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        if not arg:
            print("Usage: entity <entity_id>")
            return

        try:
            entity = self.adapter.get_entity(arg.split()[0])
        except BaaSError as e:
            _print_verbose_error(e)
            return

        print(f"\n{entity.feature} {entity.id}")
        print(f"   ♥ {entity.stats.likes_count}  💬 {entity.stats.comments_count}  👁 {entity.stats.views_count}")
        print()

    def do_like(self, arg):
        """
        Toggle a like.

        Usage: like <entity_id> <user_id>
        """
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        parts = arg.split()
        if len(parts) < 2:
            print("Usage: like <entity_id> <user_id>")
            return

        try:
            result = self.adapter.toggle_like(parts[0], parts[1])
        except BaaSError as e:
            _print_verbose_error(e)
            return

        symbol = "♥" if result.liked else "♡"
        print(f"{symbol} {result.action} - {result.count} likes")

    def do_likes(self, arg):
        """
        Show like count, and whether a user has liked.

        Usage: likes <entity_id> [user_id]
        """
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        parts = arg.split()
        if not parts:
            print("Usage: likes <entity_id> [user_id]")
            return

        user_id = parts[1] if len(parts) > 1 else None
        try:
            status = self.adapter.get_like_status(parts[0], user_id)
        except BaaSError as e:
            _print_verbose_error(e)
            return

        print(f"♥ {status.count} likes")
        if user_id:
            print(f"  {user_id} {'has' if status.has_liked else 'has not'} liked")

    def do_comment(self, arg):
        """
        Post a comment. A fresh idempotency key is sent with each command.

        Usage: comment <entity_id> <user_id> <text...>

        Example:
            comment vibe123 user42 this one slaps
        """
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        parts = arg.split(maxsplit=2)
        if len(parts) < 3:
            print("Usage: comment <entity_id> <user_id> <text...>")
            return

        entity_id, user_id, text = parts
        try:
            comment = self.adapter.create_comment(
                entity_id,
                user_id,
                text,
                idempotency_key=f"cli-{uuid.uuid4().hex}",
            )
        except BaaSError as e:
            _print_verbose_error(e)
            return

        print("✓ Comment posted:\n")
        self._print_comment(comment)

    def do_comments(self, arg):
        """
        List comments for an entity, newest first.

        Usage: comments <entity_id> [limit] [offset]
        """
        if not self.adapter:
            print("✗ Adapter not initialized")
            return

        parts = arg.split()
        if not parts:
            print("Usage: comments <entity_id> [limit] [offset]")
            return

        limit = int(parts[1]) if len(parts) > 1 else 20
        offset = int(parts[2]) if len(parts) > 2 else 0

        try:
            comments, total = self.adapter.list_comments(parts[0], limit=limit, offset=offset)
        except BaaSError as e:
            _print_verbose_error(e)
            return

        if not comments:
            print("No comments yet.")
            return

        print(f"Showing {len(comments)} of {total} comments:\n")
        for i, comment in enumerate(comments, offset + 1):
            self._print_comment(comment, i)

    # ---------------------------------------------------------------------
    # Optimistic client
    # ---------------------------------------------------------------------

    def do_login(self, arg):
        """
        Open a development session.

        Usage: login <user_id>
        """
        if not self.store:
            print("✗ Adapter not initialized")
            return

        if not arg:
            print("Usage: login <user_id>")
            return

        try:
            session = self.adapter.create_session(arg.split()[0])
        except BaaSError as e:
            _print_verbose_error(e)
            return

        self.gate.set_session(session)
        print(f"✓ Logged in as {session.user_id} until {session.expires_at.isoformat()}")

    def do_logout(self, arg):
        """Drop the current session."""
        if not self.store:
            print("✗ Adapter not initialized")
            return
        self.gate.clear()
        print("Logged out.")

    def do_mount(self, arg):
        """
        Load an entity into the store (shadow first, then the backend) and watch it.

        Usage: mount <entity_id>
        """
        if not self.store:
            print("✗ Adapter not initialized")
            return

        if not arg:
            print("Usage: mount <entity_id>")
            return

        entity_id = arg.split()[0]
        snapshot = asyncio.run(self.store.mount(entity_id, self.gate.current_user_id))
        self.refresher.watch(entity_id)
        self._print_snapshot(snapshot)

    def do_toggle(self, arg):
        """
        Optimistically toggle a like as the logged-in user.

        Usage: toggle <entity_id>
        """
        if not self.store:
            print("✗ Adapter not initialized")
            return

        if not arg:
            print("Usage: toggle <entity_id>")
            return

        outcome = asyncio.run(self.store.toggle_like(arg.split()[0], self.gate.current_user_id))
        if outcome.status == "ok":
            symbol = "♥" if outcome.liked else "♡"
            print(f"{symbol} {outcome.count} likes")
        else:
            print(f"✗ Like {outcome.status}")

    def do_post(self, arg):
        """
        Optimistically post a comment as the logged-in user.
        Transient failures are retried with backoff.

        Usage: post <entity_id> <text...>
        """
        if not self.store:
            print("✗ Adapter not initialized")
            return

        parts = arg.split(maxsplit=1)
        if len(parts) < 2:
            print("Usage: post <entity_id> <text...>")
            return

        outcome = asyncio.run(self.store.submit_comment(parts[0], self.gate.current_user_id, parts[1]))
        print(f"Comment {outcome.status} after {outcome.attempts} attempt(s) - {outcome.comments_count} comments")

    def do_refresh(self, arg):
        """
        Refresh stats for one entity, or every mounted entity.

        Usage: refresh [entity_id]
        """
        if not self.store:
            print("✗ Adapter not initialized")
            return

        entity_id = arg.split()[0] if arg else None
        updated = asyncio.run(self.refresher.refresh_now(entity_id))
        print(f"Updated {updated} entit{'y' if updated == 1 else 'ies'}")
        for watched in ([entity_id] if entity_id else self.refresher.watched):
            self._print_snapshot(self.store.snapshot(watched, self.gate.current_user_id))

    def do_notifications(self, arg):
        """Show recent notifications."""
        if not self.store:
            print("✗ Adapter not initialized")
            return

        recent = self.notifications.get_recent()
        if not recent:
            print("No notifications.")
            return
        for notification in recent:
            print(f"[{notification.level.value}] {notification.message}")

    def do_quit(self, arg):
        """Exit the CLI."""
        print("Goodbye!")
        return True

    def do_exit(self, arg):
        """Exit the CLI."""
        return self.do_quit(arg)

    def do_EOF(self, arg):
        """Handle Ctrl+D."""
        print()
        return self.do_quit(arg)

    def emptyline(self):
        """Do nothing on empty line."""
        pass


def main():
    """Run the CLI."""
    cli = BaaSAdapterCLI(shadow=CounterShadow())
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
