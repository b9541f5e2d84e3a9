import json
import os
import shutil
import threading
import time
from datetime import datetime
from typing import Any, List, Optional


class SmartLogger:
    """
    JSONL event logger.

    Each call writes one line to the main flow log (when file output is on) and
    echoes a short line to the console. Params that are too large to inline are
    spilled to a per-event detail file under `detail_log_dir`.

    Configuration comes from constructor arguments first, then from
    `SMART_LOGGER_<KEY>` environment variables.
    """

    LEVEL_PRIORITY = {
        "DEBUG": 0,
        "INFO": 1,
        "WARNING": 2,
        "ERROR": 3,
        "CRITICAL": 4,
    }
    _instance = None

    @classmethod
    def instance(cls) -> "SmartLogger":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    @classmethod
    def log(cls, level, message, category=None, params=None, max_inline_chars=100):
        cls.instance()._log(level, message, category, params, max_inline_chars)

    def __init__(
        self,
        main_log_path=None,
        detail_log_dir=None,
        min_level=None,
        include_all_min_level=None,
        console_output=None,
        file_output=None,
        remove_log_on_create=None,
        blacklist_messages=None,
    ):
        self.main_log_path = self._get_env_variable(main_log_path, "MAIN_LOG_PATH", "logs/planlab_flow.jsonl")
        self.detail_log_dir = self._get_env_variable(detail_log_dir, "DETAIL_LOG_DIR", "logs/details")
        self.min_level = self._get_env_variable(min_level, "MIN_LEVEL", "INFO")
        self.include_all_min_level = self._get_env_variable(include_all_min_level, "INCLUDE_ALL_MIN_LEVEL", "ERROR")
        self.console_output = self._get_flag(console_output, "CONSOLE_OUTPUT", True)
        self.file_output = self._get_flag(file_output, "FILE_OUTPUT", False)
        remove_on_create = self._get_flag(remove_log_on_create, "REMOVE_LOG_ON_CREATE", False)

        self._lock = threading.Lock()
        self._last_timestamp = None
        self._timestamp_counter = 0
        self.blacklist_messages = self._load_blacklist_messages(blacklist_messages)

        if self.file_output:
            dir_paths = [os.path.dirname(self.main_log_path) or ".", self.detail_log_dir]
            for dir_path in dir_paths:
                if remove_on_create and os.path.exists(dir_path):
                    shutil.rmtree(dir_path)
                os.makedirs(dir_path, exist_ok=True)

    def _get_env_variable(self, direct_value: Optional[str], env_key: str, default: str) -> str:
        if direct_value is not None:
            return direct_value
        return os.environ.get(f"SMART_LOGGER_{env_key}", default)

    def _get_flag(self, direct_value: Optional[bool], env_key: str, default: bool) -> bool:
        if direct_value is not None:
            return bool(direct_value)
        raw = os.environ.get(f"SMART_LOGGER_{env_key}")
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    def _load_blacklist_messages(self, direct_value: Optional[Any] = None) -> List[str]:
        """
        Substrings that suppress an event when found in its message or category.

        Accepts an iterable, or `SMART_LOGGER_BLACKLIST_MESSAGES` as a JSON array
        (a comma-separated string is also tolerated).
        """
        raw = direct_value
        if raw is None:
            raw = os.environ.get("SMART_LOGGER_BLACKLIST_MESSAGES")
        if raw is None:
            return []

        if isinstance(raw, str):
            raw_str = raw.strip()
            if not raw_str:
                return []
            try:
                parsed = json.loads(raw_str)
                items = parsed if isinstance(parsed, list) else []
            except json.JSONDecodeError:
                items = raw_str.split(",")
        else:
            items = list(raw)

        return [str(item).strip() for item in items if item is not None and str(item).strip()]

    def _is_message_blacklisted(self, text: str) -> bool:
        if not self.blacklist_messages or not text:
            return False
        return any(needle in text for needle in self.blacklist_messages)

    def _generate_unique_trace_id(self) -> str:
        # Same-second events get _1, _2, ... suffixes.
        current_timestamp = str(int(time.time()))
        if self._last_timestamp == current_timestamp:
            self._timestamp_counter += 1
        else:
            self._last_timestamp = current_timestamp
            self._timestamp_counter = 1
        return f"{current_timestamp}_{self._timestamp_counter}"

    def _save_detail_payload(self, trace_id, payload) -> Optional[str]:
        if not self.file_output:
            return None
        filename = f"{trace_id}.json"
        filepath = os.path.join(self.detail_log_dir, filename)
        try:
            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            return filename
        except OSError as e:
            return f"Error saving detail: {e}"

    def _priority(self, level: str, default: int) -> int:
        return self.LEVEL_PRIORITY.get((level or "").upper(), default)

    def _should_log(self, level) -> bool:
        return self._priority(level, 1) >= self._priority(self.min_level, 0)

    def _should_include_all(self, level) -> bool:
        return self._priority(level, 1) >= self._priority(self.include_all_min_level, 3)

    def _log(self, level, message, category=None, params=None, max_inline_chars=100):
        """
        Args:
            level (str): DEBUG, INFO, WARNING, ERROR, CRITICAL
            message (str): event name, e.g. "query_executor.cache.hit"
            category (str): event group, e.g. "query_executor.cache"
            params (dict): structured event payload
            max_inline_chars (int): params longer than this go to a detail file
                (0 always inlines).
        """
        message = "" if message is None else str(message)
        if self._is_message_blacklisted(message + (category or "")):
            return
        if not self._should_log(level):
            return

        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
        }
        if category:
            log_entry["category"] = category

        if params:
            params_str = str(params)
            inline = (
                max_inline_chars <= 0
                or len(params_str) <= max_inline_chars
                or self._should_include_all(level)
            )
            if inline:
                log_entry["params_summary"] = params
            else:
                detail_filename = self._save_detail_payload(self._generate_unique_trace_id(), params)
                if detail_filename is None:
                    log_entry["detail_save_error"] = "file_output_disabled"
                elif detail_filename.startswith("Error"):
                    log_entry["detail_save_error"] = detail_filename
                else:
                    log_entry["has_detail_file"] = True
                    log_entry["detail_ref"] = detail_filename

                if isinstance(params, dict):
                    log_entry["params_summary"] = {"keys": list(params.keys())}
                else:
                    log_entry["params_summary"] = {"type": type(params).__name__}

        if self.file_output:
            with self._lock:
                with open(self.main_log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")

        if self.console_output:
            category_str = f"[{category}]" if category else ""
            if params and (max_inline_chars <= 0 or self._should_include_all(level)):
                print(f"[{level}]{category_str} {message} {params}")
            else:
                print(f"[{level}]{category_str} {message}")
