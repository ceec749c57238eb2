"""
Command Dispatcher

Routes inbound text messages that start with the configured prefix to a
registered command, after checking the sender's role, the command's
visibility and the per-user rate limit.
"""

import logging
import platform
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config.schema import BotConfig
from .base import MessageDispatcher, ReadyInfo
from .commands import BotCommand, RateLimiter, Role, digits_only, jid_to_number, parse_command
from .pending import PendingActions
from .visibility import PUBLIC, CommandVisibility

logger = logging.getLogger(__name__)

RESET_ACTION = "resetsession"

CATEGORY_ICONS = {
    "general": "🎯",
    "admin": "⚙️",
    "owner": "👑",
}

COMMAND_EMOJI = {
    "ping": "🏓",
    "menu": "📋",
    "status": "📊",
    "resetsession": "🔄",
    "confirm": "✅",
    "addadmin": "👑",
    "zushi": "🌐",
    "ope": "🔒",
    "visibility": "👁️",
}


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"


class CommandDispatcher(MessageDispatcher):
    """
    Prefix-command dispatcher.

    The dispatcher never touches credentials. ``resetsession`` only asks the
    connection controller (through ``reset_session``) to start over.
    """

    def __init__(
        self,
        config: BotConfig,
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        reset_session: Optional[Callable[[str], Awaitable[None]]] = None,
        confirm_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.status_provider = status_provider
        self.reset_session = reset_session
        self.confirm_window = confirm_window
        self._clock = clock
        self._started_at = clock()

        self.commands: Dict[str, BotCommand] = {}
        self.rate_limiter = RateLimiter(
            max_requests=config.rate_limit.max_requests,
            window=config.rate_limit.window_seconds,
            clock=clock,
        )
        self.pending = PendingActions(ttl=confirm_window, clock=clock)

        self._owner = digits_only(config.owner_number)
        self._admins = {digits_only(n) for n in config.admin_numbers if digits_only(n)}

        self._register_builtin_commands()
        self.visibility = CommandVisibility(c.name for c in self.unique_commands() if c.public)

    # =========================================================================
    # COMMAND REGISTRATION
    # =========================================================================

    def _register_builtin_commands(self):
        prefix = self.config.prefix

        self.register_command(BotCommand(
            name="ping",
            handler=self._cmd_ping,
            description="Check if the bot is responsive",
            usage=f"{prefix}ping",
            public=True,
        ))

        self.register_command(BotCommand(
            name="menu",
            handler=self._cmd_menu,
            description="Display available commands",
            usage=f"{prefix}menu",
            public=True,
            aliases=["help"],
        ))

        self.register_command(BotCommand(
            name="status",
            handler=self._cmd_status,
            description="Check bot and connection status",
            usage=f"{prefix}status",
            role=Role.ADMIN,
            category="admin",
        ))

        self.register_command(BotCommand(
            name="resetsession",
            handler=self._cmd_reset_session,
            description="Discard the linked session and pair again",
            usage=f"{prefix}resetsession",
            role=Role.OWNER,
            category="owner",
        ))

        self.register_command(BotCommand(
            name="confirm",
            handler=self._cmd_confirm,
            description="Confirm a pending owner action",
            usage=f"{prefix}confirm",
            role=Role.OWNER,
            category="owner",
        ))

        self.register_command(BotCommand(
            name="addadmin",
            handler=self._cmd_add_admin,
            description="Add a user as admin (mention or reply)",
            usage=f"{prefix}addadmin @user",
            role=Role.OWNER,
            category="owner",
        ))

        self.register_command(BotCommand(
            name="zushi",
            handler=self._cmd_make_public,
            description="Make a command public (accessible to all users)",
            usage=f"{prefix}zushi <command_name>",
            role=Role.OWNER,
            category="owner",
        ))

        self.register_command(BotCommand(
            name="ope",
            handler=self._cmd_make_private,
            description="Make a command private (restrict access)",
            usage=f"{prefix}ope <command_name>",
            role=Role.ADMIN,
            category="admin",
        ))

        self.register_command(BotCommand(
            name="visibility",
            handler=self._cmd_visibility,
            description="View or reset command visibility settings",
            usage=f"{prefix}visibility [reset]",
            role=Role.ADMIN,
            category="admin",
        ))

    def register_command(self, command: BotCommand):
        """Register a command under its name and aliases"""
        self.commands[command.name] = command
        for alias in command.aliases:
            self.commands[alias] = command

    def unique_commands(self) -> List[BotCommand]:
        seen = []
        for command in self.commands.values():
            if command not in seen:
                seen.append(command)
        return seen

    # =========================================================================
    # ACCESS
    # =========================================================================

    def role_of(self, jid: str) -> Role:
        number = jid_to_number(jid)
        if self._owner and number == self._owner:
            return Role.OWNER
        if number in self._admins:
            return Role.ADMIN
        return Role.USER

    def is_public(self, command: BotCommand) -> bool:
        return self.visibility.status(command.name, self.config.private_mode) == PUBLIC

    def can_access(self, role: Role, command: BotCommand) -> bool:
        if self.is_public(command):
            return role.satisfies(command.role)
        # Private commands are closed to ordinary users
        return role.satisfies(Role.ADMIN) and role.satisfies(command.role)

    def available_commands(self, role: Role) -> List[BotCommand]:
        return [c for c in self.unique_commands() if self.can_access(role, c)]

    @property
    def mode_label(self) -> str:
        return "Private" if self.config.private_mode else "Public"

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, handle, message) -> None:
        parsed = parse_command(message.text, self.config.prefix)
        if parsed is None:
            return

        command = self.commands.get(parsed.name)
        if command is None:
            return

        sender = message.sender_jid
        number = jid_to_number(sender)
        role = self.role_of(sender)
        chat = message.remote_jid

        if role is not Role.OWNER and self.rate_limiter.is_limited(number):
            logger.info(f"Rate limited {number} on {parsed.name}")
            await handle.send_message(
                chat,
                "⚠️ *Rate Limited*\n\nYou are sending commands too quickly. "
                "Please wait a moment before trying again.",
            )
            return

        if not self.can_access(role, command):
            logger.info(f"Denied {parsed.name} to {number} ({role.value})")
            visibility = "🌐 Public" if self.is_public(command) else "🔒 Private"
            await handle.send_message(
                chat,
                f"❌ *Access Denied*\n\n"
                f"This command requires {self._required_role(command).value} role or higher.\n"
                f"Your role: {role.display}\n"
                f"Command visibility: {visibility}",
            )
            return

        try:
            await command.handler(handle, message, parsed.args, role)
        except Exception:
            logger.exception(f"Error executing command {parsed.name}")
            await handle.send_message(
                chat,
                "❌ *Command Error*\n\nAn error occurred while executing this command. "
                "Please try again later.",
            )
            return

        logger.info(f"Command executed: {parsed.name} by {number} ({role.value})")

    def _required_role(self, command: BotCommand) -> Role:
        if not self.is_public(command) and command.role is Role.USER:
            return Role.ADMIN
        return command.role

    async def on_ready(self, handle, info: ReadyInfo) -> None:
        if not (info.first_connect or info.is_new_login):
            return
        if not self._owner:
            logger.debug("No owner number configured; skipping startup notice")
            return

        text = (
            f"🤖 *{self.config.name}* is online!\n\n"
            f"🔒 Mode: {self.mode_label}\n"
            f"💡 Prefix: {self.config.prefix}\n"
            f"🕐 Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        try:
            await handle.send_message(f"{self._owner}@s.whatsapp.net", text)
        except Exception as e:
            logger.warning(f"Failed to send startup notice to owner: {e}")

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def uptime(self) -> str:
        return format_uptime(self._clock() - self._started_at)

    async def _cmd_ping(self, handle, message, args, role):
        start = time.monotonic()
        await handle.send_message(message.remote_jid, "🏓 Pinging...")
        latency = int((time.monotonic() - start) * 1000)

        await handle.send_message(
            message.remote_jid,
            f"🏓 *Pong!*\n\n"
            f"⚡ *Latency:* {latency}ms\n"
            f"🤖 *Bot:* Online\n"
            f"⏰ *Uptime:* {self.uptime()}\n"
            f"🔒 *Mode:* {self.mode_label}",
        )

    async def _cmd_menu(self, handle, message, args, role):
        available = self.available_commands(role)

        categories: Dict[str, List[BotCommand]] = {}
        for command in available:
            categories.setdefault(command.category, []).append(command)

        lines = [
            f"🤖 *{self.config.name}*",
            "",
            f"Role: {role.display}",
            f"Mode: {'🔒 Private' if self.config.private_mode else '🌐 Public'}",
            "",
        ]
        for category, commands in categories.items():
            lines.append(f"{CATEGORY_ICONS.get(category, '📁')} *{category.upper()} COMMANDS*")
            for command in commands:
                emoji = COMMAND_EMOJI.get(command.name, "🔧")
                visibility = "🌐" if self.is_public(command) else "🔒"
                lines.append(f"{emoji} `{command.usage}` {visibility}")
                lines.append(f"   ↳ {command.description}")
            lines.append("")

        lines.append(f"💡 Prefix: `{self.config.prefix}`")
        lines.append(f"📊 Commands: {len(available)}")

        await handle.send_message(message.remote_jid, "\n".join(lines))

    async def _cmd_status(self, handle, message, args, role):
        status = self.status_provider() if self.status_provider else {}

        lines = [
            "📊 *Bot Status*",
            "",
            f"🤖 *Name:* {self.config.name}",
            f"⏰ *Uptime:* {self.uptime()}",
            f"🔌 *Connection:* {status.get('state', 'unknown')}",
            f"📱 *Number:* {status.get('user_id') or 'unknown'}",
            f"🔁 *Reconnect attempts:* {status.get('connection_attempts', 0)}",
            f"🔧 *Commands:* {len(self.unique_commands())}",
            f"👥 *Admins:* {len(self._admins)}",
            f"🔒 *Mode:* {self.mode_label}",
            f"🐍 *Python:* {platform.python_version()}",
        ]
        await handle.send_message(message.remote_jid, "\n".join(lines))

    async def _cmd_reset_session(self, handle, message, args, role):
        number = jid_to_number(message.sender_jid)
        self.pending.put(number, RESET_ACTION)
        await handle.send_message(
            message.remote_jid,
            f"⚠️ *Reset Session*\n\n"
            f"This unlinks the bot and requires pairing again.\n"
            f"Send `{self.config.prefix}confirm` within {self.confirm_window:g} seconds to proceed.",
        )

    async def _cmd_confirm(self, handle, message, args, role):
        number = jid_to_number(message.sender_jid)
        if not self.pending.take(number, RESET_ACTION):
            await handle.send_message(message.remote_jid, "❌ Nothing to confirm, or the request expired.")
            return

        if self.reset_session is None:
            await handle.send_message(message.remote_jid, "❌ Session reset is not available.")
            return

        await handle.send_message(message.remote_jid, "🔄 Resetting session. Watch the console for a new pairing code.")
        logger.warning(f"Session reset confirmed by {number}")
        await self.reset_session(number)

    async def _cmd_add_admin(self, handle, message, args, role):
        target = message.quoted_participant
        if not target and message.mentioned_jids:
            target = message.mentioned_jids[0]
        if not target and args:
            target = digits_only(args[0])

        number = jid_to_number(target) if target else ""
        if not number:
            await handle.send_message(
                message.remote_jid,
                "❌ Please mention a user or reply to their message to add as admin.",
            )
            return

        if number == self._owner or number in self._admins:
            await handle.send_message(message.remote_jid, "❌ User is already an admin or error occurred.")
            return

        self._admins.add(number)
        logger.info(f"Admin {number} added by {jid_to_number(message.sender_jid)}")
        await handle.send_message(message.remote_jid, "✅ Successfully added user as admin!")

    def _command_arg(self, args) -> Optional[BotCommand]:
        if not args:
            return None
        return self.commands.get(args[0].lower())

    async def _cmd_make_public(self, handle, message, args, role):
        if not args:
            await handle.send_message(
                message.remote_jid,
                f"🌐 *Make Command Public*\n\nUsage: {self.config.prefix}zushi <command_name>\n\n"
                f"This will make the command accessible to all users.",
            )
            return

        command = self._command_arg(args)
        if command is None:
            await handle.send_message(message.remote_jid, f"❌ Command '{args[0].lower()}' not found.")
            return

        self.visibility.make_public(command.name, jid_to_number(message.sender_jid))
        await handle.send_message(
            message.remote_jid,
            f"✅ *Command Made Public*\n\n🌐 Command: `{command.name}`\n"
            f"Status: Now accessible to all users",
        )

    async def _cmd_make_private(self, handle, message, args, role):
        if not args:
            await handle.send_message(
                message.remote_jid,
                f"🔒 *Make Command Private*\n\nUsage: {self.config.prefix}ope <command_name>\n\n"
                f"This will restrict the command based on role permissions.",
            )
            return

        command = self._command_arg(args)
        if command is None:
            await handle.send_message(message.remote_jid, f"❌ Command '{args[0].lower()}' not found.")
            return

        if not self.visibility.make_private(command.name, jid_to_number(message.sender_jid)):
            await handle.send_message(
                message.remote_jid,
                f"❌ Failed to make command '{command.name}' private. "
                f"It is a protected system command that must remain public.",
            )
            return

        await handle.send_message(
            message.remote_jid,
            f"✅ *Command Made Private*\n\n🔒 Command: `{command.name}`\n"
            f"Status: Now restricted by role permissions",
        )

    async def _cmd_visibility(self, handle, message, args, role):
        if args and args[0].lower() == "reset":
            self.visibility.reset()
            await handle.send_message(
                message.remote_jid,
                "✅ *Visibility Reset*\n\nAll command visibility settings have been reset to defaults.",
            )
            return

        stats = self.visibility.stats(self.config.private_mode)
        lines = [
            "👁️ *Command Visibility Status*",
            "",
            f"Default mode: {stats['default_mode']}",
            f"🌐 Public ({stats['public']}): {', '.join(self.visibility.public_commands) or 'none'}",
            f"🔒 Private ({stats['private']}): {', '.join(self.visibility.private_commands) or 'none'}",
        ]
        await handle.send_message(message.remote_jid, "\n".join(lines))
