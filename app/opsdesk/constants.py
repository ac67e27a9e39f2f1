import re

# Mainland mobile numbers: 11 digits, leading 1, second digit 3-9.
PHONE_NUMBER_RE = re.compile(r"^1[3-9]\d{9}$")

CARRIER_MOBILE = "中国移动"
CARRIER_UNICOM = "中国联通"
CARRIER_TELECOM = "中国电信"
CARRIER_OTHER = "其他"
VALID_CARRIERS = (CARRIER_MOBILE, CARRIER_TELECOM, CARRIER_UNICOM, CARRIER_OTHER)

ANSWER_LETTERS = ("A", "B", "C", "D")

DEFAULT_PASS_SCORE = 60
DEFAULT_EXAM_TIME_LIMIT = 35  # minutes

CONFIG_TRAINING_PASS_SCORE = "training_pass_score"
CONFIG_EXAM_TIME_LIMIT = "exam_time_limit"
PROTECTED_CONFIG_KEYS = (CONFIG_TRAINING_PASS_SCORE,)
PUBLIC_CONFIG_DEFAULTS = {
    CONFIG_EXAM_TIME_LIMIT: str(DEFAULT_EXAM_TIME_LIMIT),
    CONFIG_TRAINING_PASS_SCORE: str(DEFAULT_PASS_SCORE),
}

HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def is_valid_phone_number(value: object) -> bool:
    return isinstance(value, str) and bool(PHONE_NUMBER_RE.fullmatch(value))
