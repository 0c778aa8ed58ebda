import json
import logging
import re

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("sibflo_backend")

FENCE_PATTERN = re.compile(r"```[\w-]*\n?|```")


class BaseUtils():
    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        return unsafe_string_format(dest_string, print_unused_keys_report, **kwargs)

    def clean_triple_backticks(self, code) -> str:
        return clean_triple_backticks(code)

    def _coerce_field_to_str(self, value) -> str:
        return coerce_field_to_str(value)

    def _preview(self, value, limit: int = 500) -> str:
        text = value if isinstance(value, str) else coerce_field_to_str(value)
        if len(text) <= limit:
            return text
        return text[:limit] + f"... [{len(text) - limit} more chars]"


PLACEHOLDER_PATTERN = re.compile(r'\{(\w+)\}')


def unsafe_string_format(dest_string, print_unused_keys_report=True, **kwargs):
    """
    Formats a destination string by replacing placeholders with corresponding values from kwargs.

    It works differently from the standard "format" method: only `{word}` placeholders whose key
    is passed in kwargs are replaced, so literal JSON braces in the template stay untouched.
    Placeholders without a value are left as they are and reported.
    """
    missing_keys = []

    def replacer(match):
        key = match.group(1)
        if key in kwargs:
            return str(kwargs[key])
        missing_keys.append(key)
        return match.group(0)

    result = PLACEHOLDER_PATTERN.sub(replacer, dest_string)
    if missing_keys and print_unused_keys_report:
        logger.info(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
    return result


def clean_triple_backticks(code) -> str:
    """
    Removes markdown code-fence markers (with optional language tag) anywhere in the string.
    """
    return FENCE_PATTERN.sub('', code or '')


def coerce_field_to_str(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if hasattr(value, "model_dump"):
        value = value.model_dump(by_alias=True, exclude_none=True)
    elif isinstance(value, (list, tuple)) and value and all(hasattr(v, "model_dump") for v in value):
        value = [v.model_dump(by_alias=True, exclude_none=True) for v in value]
    try:
        return json.dumps(value, indent=2)
    except TypeError:
        return str(value).strip()
