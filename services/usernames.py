# services/usernames.py
"""
Username availability rules
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.database_models import Profile, UsernameHistory

logger = logging.getLogger(__name__)

RESERVED_USERNAMES = frozenset([
    'admin', 'administrator', 'root', 'system', 'support', 'help',
    'mod', 'moderator', 'staff', 'official', 'team', 'api',
    'www', 'mail', 'ftp', 'blog', 'shop', 'store', 'app',
    'dashboard', 'settings', 'account', 'profile', 'login',
    'signup', 'auth', 'register', 'about', 'contact', 'terms',
    'privacy', 'legal', 'billing', 'pricing', 'checkout', 'cart',
    'media', 'events', 'courses', 'messages', 'notifications',
    'social', 'community', 'groups', 'meet', 'video',
    'null', 'undefined', 'test', 'demo',
])

USERNAME_PATTERN = re.compile(r'^[a-z0-9_-]{3,30}$')
EDGE_SPECIAL = re.compile(r'^[-_]|[-_]$')
CONSECUTIVE_SPECIAL = re.compile(r'[-_]{2,}')

# Abandoned names stay blocked for other users this long
HISTORY_HOLD = timedelta(days=90)


@dataclass
class Availability:
    available: bool
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'available': self.available}
        if self.error:
            data['error'] = self.error
        if self.message:
            data['message'] = self.message
        return data


def format_problem(username: str) -> Optional[str]:
    """First formatting rule the (already cleaned) name breaks"""
    if not USERNAME_PATTERN.match(username):
        if len(username) < 3:
            return 'Username must be at least 3 characters'
        if len(username) > 30:
            return 'Username must be 30 characters or less'
        return 'Username must be 3-30 characters using only letters, numbers, hyphens, and underscores'
    if EDGE_SPECIAL.search(username):
        return 'Username cannot start or end with a hyphen or underscore'
    if CONSECUTIVE_SPECIAL.search(username):
        return 'Username cannot have consecutive hyphens or underscores'
    if username in RESERVED_USERNAMES:
        return 'This username is reserved'
    return None


def check_username(username: str, current_user_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> Availability:
    cleaned = username.strip().lower()

    problem = format_problem(cleaned)
    if problem:
        return Availability(available=False, error=problem)

    owner = Profile.query.filter_by(username=cleaned).first()
    if owner is not None:
        if current_user_id and owner.id == current_user_id:
            return Availability(available=True, message='This is your current username')
        return Availability(available=False, error='Username is already taken')

    latest = UsernameHistory.query.filter_by(old_username=cleaned) \
        .order_by(UsernameHistory.changed_at.desc()).first()
    if latest is not None:
        now = now or datetime.utcnow()
        if now - latest.changed_at < HISTORY_HOLD and latest.user_id != current_user_id:
            return Availability(
                available=False,
                error='This username was recently used and is temporarily unavailable'
            )

    logger.info(f'Username check: "{cleaned}" is available')
    return Availability(available=True)
