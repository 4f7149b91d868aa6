"""
Defensive programming utilities for crashguard.
Input validation and state verification at the CLI and scenario boundary.
"""

import logging
from pathlib import Path
from typing import Optional, Union, Any


class ValidationError(Exception):
    """Raised when validation fails."""
    pass


class InputValidator:
    """Validates all inputs defensively."""

    @staticmethod
    def validate_path(path: Union[str, Path, None], must_exist: bool = False,
                      must_be_dir: bool = False, allow_none: bool = False) -> Optional[Path]:
        """
        Validate and normalize a path argument.

        Args:
            path: Path to validate
            must_exist: Path must exist
            must_be_dir: Path must be a directory (when it exists)
            allow_none: Allow None values

        Returns:
            Absolute Path object or None

        Raises:
            ValidationError: If validation fails
        """
        if path is None:
            if allow_none:
                return None
            raise ValidationError("Path cannot be None")

        if isinstance(path, str):
            if '\x00' in path:
                raise ValidationError("Path contains a null byte")
            if not path.strip():
                raise ValidationError("Path cannot be empty")
            path_obj = Path(path)
        elif isinstance(path, Path):
            path_obj = path
        else:
            raise ValidationError(f"Invalid path type: {type(path)}")

        if not path_obj.is_absolute():
            logging.debug(f"Relative path {path_obj} - converting to absolute")
            path_obj = path_obj.absolute()

        if must_exist and not path_obj.exists():
            raise ValidationError(f"Path does not exist: {path_obj}")

        if must_be_dir and path_obj.exists() and not path_obj.is_dir():
            raise ValidationError(f"Path is not a directory: {path_obj}")

        return path_obj

    @staticmethod
    def validate_int(value: Any, min_val: Optional[int] = None, max_val: Optional[int] = None,
                     name: str = "value") -> int:
        """
        Validate integer input.

        Args:
            value: Value to validate (int or numeric string)
            min_val: Minimum allowed value
            max_val: Maximum allowed value
            name: Name used in error messages

        Returns:
            Validated integer

        Raises:
            ValidationError: If validation fails
        """
        if isinstance(value, bool):
            raise ValidationError(f"{name} must be an integer, got bool")

        try:
            int_value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be an integer, got {value!r}")

        if min_val is not None and int_value < min_val:
            raise ValidationError(f"{name} too small: {int_value} < {min_val}")

        if max_val is not None and int_value > max_val:
            raise ValidationError(f"{name} too large: {int_value} > {max_val}")

        return int_value


class StateValidator:
    """Validates object and system state."""

    @staticmethod
    def check_dir_writable(dir_path: Path) -> bool:
        """
        Check if directory is writable.

        Args:
            dir_path: Path to directory

        Returns:
            True if writable, False otherwise
        """
        try:
            if not dir_path.exists():
                return False

            if not dir_path.is_dir():
                return False

            # Try to create a temporary file
            test_file = dir_path / '.crashguard_write_test'
            test_file.touch()
            test_file.unlink()

            return True
        except OSError:
            return False

    @staticmethod
    def check_creatable(path: Path) -> bool:
        """
        Check that a data directory could be created at path.

        True when the path already is a directory, or when its nearest
        existing ancestor is a writable directory.
        """
        if path.is_dir():
            return True
        if path.exists():
            return False

        parent = path.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        return StateValidator.check_dir_writable(parent)
