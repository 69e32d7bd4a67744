import random
import secrets

# Topic pool for rooms created by the global matchmaker
GLOBAL_TOPICS = [
    'Is social media doing more harm than good?',
    'Should coding be compulsory in schools?',
    'Work from home versus work from office',
    'Can artificial intelligence replace teachers?',
    'Is a college degree still necessary for success?',
    'Should voting be made compulsory?',
    'Electric vehicles: the future or a fad?',
    'Is competitive examination the right way to select talent?',
    'Startups versus corporate jobs for freshers',
    'Should single-use plastic be banned completely?',
    'Is remote learning as effective as classroom learning?',
    'Does technology make us more lonely?',
]


def _hex_code(num_bytes: int) -> str:
    return secrets.token_hex(num_bytes).upper()


def generate_room_code() -> str:
    """Six upper-case hex characters, e.g. '3FA9C1'."""
    return _hex_code(3)


def generate_tournament_code() -> str:
    """Eight upper-case hex characters, e.g. '9B01D2EE'."""
    return _hex_code(4)


def generate_join_code() -> str:
    return _hex_code(3)


def generate_group_id(round_num: int, group_num: int) -> str:
    """Group id like 'R2-G3-A1F0'."""
    return f"R{round_num}-G{group_num}-{_hex_code(2)}"


def generate_session_id() -> str:
    return secrets.token_hex(12)


def pick_global_topic(rng: random.Random = None) -> str:
    return (rng or random).choice(GLOBAL_TOPICS)


def normalize_code(value) -> str:
    """Codes are matched trimmed and upper-cased."""
    return str(value or '').strip().upper()
