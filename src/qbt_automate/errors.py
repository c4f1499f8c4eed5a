"""
User-friendly error handling for qbt-automate
Provides clear, actionable error messages without Python stack traces
"""

import sys
from typing import Optional

from qbt_automate.logging import get_logger

logger = get_logger(__name__)


class QBittorrentError(Exception):
    """Base exception for all qbt-automate errors"""

    def __init__(self, code: str, message: str, details: Optional[dict] = None, fix: Optional[str] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fix = fix
        super().__init__(self.format_error())

    def format_error(self) -> str:
        """Format error message for user display"""
        lines = [f"[{self.code}] {self.message}"]

        if self.details:
            for key, value in self.details.items():
                lines.append(f"  • {key}: {value}")

        if self.fix:
            lines.append(f"  • Fix: {self.fix}")

        return "\n".join(lines)


class AuthenticationError(QBittorrentError):
    """Authentication with qBittorrent failed"""

    def __init__(self, host: str, response_text: Optional[str] = None):
        details = {"Host": host}
        if response_text:
            details["Response"] = response_text

        super().__init__(
            code="AUTH-001",
            message="Cannot log in to qBittorrent",
            details=details,
            fix="Check the instance host, username and password in config.yml"
        )


class ConnectionError(QBittorrentError):
    """Cannot reach qBittorrent server"""

    def __init__(self, host: str, original_error: str):
        super().__init__(
            code="CONN-001",
            message="Cannot reach qBittorrent server",
            details={
                "Host": host,
                "Error": str(original_error)
            },
            fix="Check that qBittorrent is running and the host/port are correct"
        )


class APIError(QBittorrentError):
    """qBittorrent API call failed"""

    def __init__(self, endpoint: str, reason: str, hashes: Optional[list] = None):
        details = {
            "Endpoint": endpoint,
            "Problem": reason[:200]
        }
        if hashes:
            details["Torrents"] = len(hashes)

        super().__init__(
            code="API-001",
            message="qBittorrent API request failed",
            details=details,
            fix="Check qBittorrent logs for more details"
        )


class ConfigurationError(QBittorrentError):
    """Configuration file error"""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            code="CFG-001",
            message="Cannot load configuration",
            details={
                "File": file_path,
                "Problem": reason
            },
            fix="Check that the configuration file exists and has valid YAML syntax"
        )


class RuleValidationError(QBittorrentError):
    """Rule configuration is invalid"""

    def __init__(self, rule_name: str, reason: str, code: str = "RULE-001"):
        self.rule_name = rule_name
        self.reason = reason
        super().__init__(
            code=code,
            message="Invalid rule configuration",
            details={
                "Rule": rule_name,
                "Problem": reason
            },
            fix="Check the rule definition in rules.yml"
        )


class FieldError(RuleValidationError):
    """Unknown field in condition"""

    def __init__(self, rule_name: str, field: str):
        self.field = field
        super().__init__(rule_name, f"Unknown condition field '{field}'", code="FIELD-001")


class OperatorError(RuleValidationError):
    """Operator not supported for a field"""

    def __init__(self, rule_name: str, operator: str, field: str):
        self.operator = operator
        self.field = field
        super().__init__(rule_name, f"Operator '{operator}' is not supported for field '{field}'", code="OP-001")


class TemplateError(QBittorrentError):
    """Path or argument template could not be rendered"""

    def __init__(self, template: str, reason: str):
        self.template = template
        super().__init__(
            code="TPL-001",
            message="Cannot render template",
            details={
                "Template": template,
                "Problem": reason
            },
            fix="Use only supported placeholders such as {name}, {hash}, {category}, {tracker}, {isolation_folder}"
        )


class ProgramNotAllowedError(QBittorrentError):
    """External program path is not on the allow-list"""

    def __init__(self, program_id: str, path: str):
        self.program_id = program_id
        self.path = path
        super().__init__(
            code="PROG-001",
            message="External program is not allowed",
            details={
                "Program": program_id,
                "Path": path
            },
            fix="Add the executable or its directory to programs.allow_list in config.yml"
        )


class UnknownInstanceError(QBittorrentError):
    """Requested instance is not configured"""

    def __init__(self, instance_id: str, available: list):
        self.instance_id = instance_id
        super().__init__(
            code="INST-001",
            message=f"Unknown instance: {instance_id}",
            details={
                "Available instances": ', '.join(available) if available else "(none configured)"
            },
            fix="Define the instance under 'instances' in config.yml"
        )


def handle_errors(func):
    """Decorator for user-friendly error handling"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except QBittorrentError as e:
            logger.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("Operation cancelled by user")
            sys.exit(0)
        except Exception as e:
            logger.error("Unexpected error occurred")
            logger.error(f"  • Error: {type(e).__name__}: {str(e)}")
            logger.error("  • Fix: Please report this issue with the error details above")
            logger.debug("Full stack trace:", exc_info=True)
            sys.exit(1)
    return wrapper
