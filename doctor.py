"""
crashguard Doctor - Diagnostic tool to check the environment and, optionally,
one data directory (lock, initialization state, integrity).
Run this before trusting scenario results on a new machine.
"""

import os
import sys
import json
import signal
import argparse
import importlib
from datetime import datetime, timezone
from pathlib import Path
from colorama import init, Fore, Style

init(autoreset=True)

PROJECT_ROOT = Path(__file__).parent
CONFIG_PATH = PROJECT_ROOT / 'config_files' / 'config.json'
REQUIRED_PACKAGES = ['tqdm', 'psutil', 'colorama']
CORE_MODULES = [
    'core.config',
    'core.dir_lock',
    'core.partial_init',
    'core.engine',
    'harness.crash_harness',
    'harness.verification',
    'harness.scenarios',
]


class CrashguardDoctor:
    """Diagnostic tool for crashguard setup."""

    def __init__(self, data_dir=None, config_path=None, quiet=False):
        self.data_dir = Path(os.path.abspath(data_dir)) if data_dir else None
        self.config_path = Path(config_path) if config_path else CONFIG_PATH
        self.quiet = quiet
        self.config = None
        self.issues = []
        self.warnings = []
        self.passed = []
        self.details = {}
        self.total_steps = 7 + (3 if self.data_dir else 0)
        self.step = 0

    def _out(self, text='', end='\n'):
        if not self.quiet:
            print(text, end=end)

    def _begin(self, title):
        self.step += 1
        self._out(f"{Fore.YELLOW}[{self.step}/{self.total_steps}]{Style.RESET_ALL} {title}...", end=" ")

    def _ok(self, name, text):
        self._out(f"{Fore.GREEN}✓ {text}{Style.RESET_ALL}")
        self.passed.append(name)

    def _warn(self, text, warning):
        self._out(f"{Fore.YELLOW}⚠ {text}{Style.RESET_ALL}")
        self.warnings.append(warning)

    def _fail(self, text, issue):
        self._out(f"{Fore.RED}✗ {text}{Style.RESET_ALL}")
        self.issues.append(issue)

    def print_header(self):
        """Print diagnostic header."""
        self._out(f"\n{Fore.CYAN}{'='*60}{Style.RESET_ALL}")
        self._out(f"{Fore.CYAN}crashguard Doctor - System Diagnostic{Style.RESET_ALL}")
        self._out(f"{Fore.CYAN}{'='*60}{Style.RESET_ALL}\n")

    def check_python_version(self):
        """Check Python version."""
        self._begin("Checking Python version")
        version = sys.version_info
        if version.major == 3 and version.minor >= 8:
            self._ok("Python version", f"Python {version.major}.{version.minor}.{version.micro}")
        else:
            self._fail(f"Python {version.major}.{version.minor} (need 3.8+)", "Python version too old")

    def check_dependencies(self):
        """Check required Python packages."""
        self._begin("Checking Python dependencies")
        missing = []
        for package in REQUIRED_PACKAGES:
            try:
                importlib.import_module(package)
            except ImportError:
                missing.append(package)

        if not missing:
            self._ok("Python dependencies", "All packages installed")
        else:
            self._fail(f"Missing: {', '.join(missing)}", f"Missing packages: {', '.join(missing)}")
            self._out(f"  {Style.DIM}Fix: pip install {' '.join(missing)}{Style.RESET_ALL}")

    def check_config_file(self):
        """Check the config file loads and validates."""
        self._begin("Checking configuration file")
        from core.config import Config

        if not self.config_path.exists():
            self.config = Config()
            self._warn("Config file not found (using defaults)", "No config.json - defaults in use")
            return

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.config = Config()
            self._fail(f"Invalid JSON: {e}", "Config file has invalid JSON")
            return

        self.config = Config()
        if not isinstance(data, dict):
            self._fail("Top level is not a JSON object", "Config file has invalid values")
            return

        valid, errors = self.config._validate_config(data)
        if valid:
            self.config.config.update(data)
            self._ok("Configuration file", "Valid configuration")
        else:
            self._fail(f"{len(errors)} invalid value(s)", "Config file has invalid values")
            for error in errors:
                for line in error.splitlines():
                    self._out(f"  {Style.DIM}{line}{Style.RESET_ALL}")

    def check_signal_support(self):
        """Kill injection needs POSIX signals, fd inheritance and a real kill signal."""
        self._begin("Checking signal and process support")
        problems = []
        if not hasattr(signal, 'SIGKILL'):
            problems.append("SIGKILL unavailable")
        if os.name != 'posix':
            problems.append("pipe inheritance (pass_fds) needs POSIX")

        configured = self.config.get('kill_signal', 'SIGKILL') if self.config else 'SIGKILL'
        if not hasattr(signal, configured):
            problems.append(f"configured kill signal {configured} unavailable")

        if problems:
            self._fail('; '.join(problems), "Crash injection not supported on this platform")
            return

        try:
            import fcntl  # noqa: F401
        except ImportError:
            self._warn("fcntl missing (lock_mode 'flock' unavailable)", "lock_mode 'flock' unavailable")
            return
        self._ok("Signal support", f"{configured} and pipe inheritance available")

    def check_core_modules(self):
        """Check core Python modules import."""
        self._begin("Checking core modules")
        missing = []
        for module in CORE_MODULES:
            try:
                importlib.import_module(module)
            except ImportError:
                missing.append(module)

        if not missing:
            self._ok("Core modules", "All core modules found")
        else:
            self._fail(f"Missing: {', '.join(missing)}", f"Missing modules: {', '.join(missing)}")

    def check_work_root(self):
        """Scenario data directories are created under the work root."""
        self._begin("Checking scenario work root")
        from utils.defensive import StateValidator

        work_root = self.config.work_root if self.config else None
        if work_root is None:
            self._warn("Could not determine work root", "Work root unknown")
        elif StateValidator.check_dir_writable(work_root):
            self._ok("Work root", f"Writable: {work_root}")
        else:
            self._fail(f"Not writable: {work_root}", "Scenario work root is not writable")

    def check_log_directory(self):
        """Check log directory can be created."""
        self._begin("Checking log directory")
        log_dir = Path(self.config.log_folder if self.config else 'logs')

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            self._ok("Log directory", "Log directory ready")
        except OSError as e:
            self._fail(f"Cannot create: {e}", "Cannot create log directory")

    def check_lock_status(self):
        """Report who holds the data directory's lock."""
        self._begin("Checking data directory lock")
        from core.dir_lock import DirectoryLockManager

        status = DirectoryLockManager(self.config).inspect(self.data_dir)
        self.details['lock'] = status.to_dict()
        if not status.marker_exists:
            self._ok("Lock status", "Unlocked")
        elif status.owner_alive:
            self._warn(f"Held by PID {status.record.owner_pid}",
                       f"Data directory locked by PID {status.record.owner_pid} (integrity check skipped)")
        else:
            self._warn("Stale lock marker (reclaimed on next open)", "Stale lock marker present")

    def check_init_state(self):
        """Detect partial initialization without quarantining anything."""
        self._begin("Checking initialization state")
        from core.partial_init import PartialInitDetector
        from utils.defensive import StateValidator

        if not self.data_dir.exists():
            if StateValidator.check_creatable(self.data_dir):
                self._warn("Does not exist (created on first open)",
                           f"Data directory does not exist yet: {self.data_dir}")
            else:
                self._fail("Does not exist and cannot be created",
                           f"Data directory not found: {self.data_dir}")
            return

        try:
            state = PartialInitDetector(self.config).inspect(self.data_dir)
        except OSError as e:
            self._fail(f"Cannot list directory: {e}", "Data directory cannot be listed")
            return

        self.details['init_state'] = state.to_dict()
        if state.fully_initialized:
            self._ok("Init state", "Fully initialized")
        elif state.partial:
            self._warn(f"Partially initialized ({state.storage_entry_count} storage entries)",
                       "Partially initialized - will be quarantined on next open")
        else:
            self._warn("Empty (will be initialized on first open)", "Data directory is empty")

    def check_integrity(self):
        """Open the data directory and run the integrity layers."""
        self._begin("Checking data directory integrity")
        from harness.verification import VerificationPipeline

        state = self.details.get('init_state')
        lock = self.details.get('lock', {})
        if not state or not state.get('fully_initialized'):
            self._warn("Skipped (not fully initialized)", "Integrity check skipped")
            return
        if lock.get('owner_alive'):
            self._warn("Skipped (directory in use)", "Integrity check skipped")
            return

        pipeline = VerificationPipeline(self.config)
        opened = pipeline.try_open(self.data_dir)
        if not opened.success:
            reason = 'timed out' if opened.timed_out else opened.error_text
            self._fail(f"Open failed: {reason}", "Data directory cannot be opened")
            return

        try:
            report = pipeline.verify_integrity(opened.handle)
        finally:
            opened.handle.close()

        self.details['integrity'] = report.to_dict()
        if report.intact:
            self._ok("Integrity", "Intact")
        else:
            self._fail(f"{len(report.issues)} issue(s)", f"Integrity issues: {'; '.join(report.issues[:3])}")

    def print_summary(self):
        """Print diagnostic summary."""
        self._out(f"\n{Fore.CYAN}{'='*60}{Style.RESET_ALL}")
        self._out(f"{Fore.CYAN}Summary{Style.RESET_ALL}")
        self._out(f"{Fore.CYAN}{'='*60}{Style.RESET_ALL}\n")

        self._out(f"{Fore.GREEN}✓ Passed:{Style.RESET_ALL} {len(self.passed)}")
        self._out(f"{Fore.YELLOW}⚠ Warnings:{Style.RESET_ALL} {len(self.warnings)}")
        self._out(f"{Fore.RED}✗ Issues:{Style.RESET_ALL} {len(self.issues)}")

        if self.warnings:
            self._out(f"\n{Fore.YELLOW}Warnings:{Style.RESET_ALL}")
            for w in self.warnings:
                self._out(f"  • {w}")

        if self.issues:
            self._out(f"\n{Fore.RED}Critical Issues:{Style.RESET_ALL}")
            for i in self.issues:
                self._out(f"  • {i}")
            self._out(f"\n{Fore.RED}Fix these issues before trusting crashguard results!{Style.RESET_ALL}")
        else:
            self._out(f"\n{Fore.GREEN}{'='*60}{Style.RESET_ALL}")
            self._out(f"{Fore.GREEN}All checks passed! Ready to run crashguard.{Style.RESET_ALL}")
            self._out(f"{Fore.GREEN}{'='*60}{Style.RESET_ALL}")

        self._out()

    def recommended_actions(self):
        actions = []
        for issue in self.issues:
            if issue.startswith("Missing packages"):
                actions.append(f"pip install {' '.join(REQUIRED_PACKAGES)}")
            elif issue == "Python version too old":
                actions.append("Install Python 3.8+ and run doctor again.")
            elif issue.startswith("Config file"):
                actions.append(f"Fix {self.config_path} (see the errors above) or remove it to use defaults.")
            elif issue.startswith("Integrity issues") or issue.startswith("Data directory cannot be opened"):
                actions.append("Keep the data directory for inspection; restore from backup if the data matters.")
        if not actions and not self.issues:
            actions.append("Re-run `crashguard-doctor` and confirm zero issues before relying on results.")
        return actions

    def to_dict(self, exit_code=None):
        """Machine-readable report for --json."""
        if self.issues:
            status = 'blocked'
        elif self.warnings:
            status = 'ready_with_warnings'
        else:
            status = 'ready'
        return {
            'timestamp_utc': datetime.now(timezone.utc).isoformat(),
            'exit_code': exit_code,
            'status': status,
            'counts': {'passed': len(self.passed), 'warnings': len(self.warnings), 'issues': len(self.issues)},
            'passed': list(self.passed),
            'warnings': list(self.warnings),
            'issues': list(self.issues),
            'data_dir': str(self.data_dir) if self.data_dir else None,
            'details': self.details,
            'recommended_actions': self.recommended_actions(),
        }

    def run(self):
        """Run all diagnostic checks."""
        self.print_header()

        self.check_python_version()
        self.check_dependencies()
        self.check_config_file()
        self.check_signal_support()
        self.check_core_modules()
        self.check_work_root()
        self.check_log_directory()

        if self.data_dir:
            self.check_lock_status()
            self.check_init_state()
            self.check_integrity()

        self.print_summary()

        return 0 if not self.issues else 1


def main():
    """Main entry point for crashguard-doctor command."""
    parser = argparse.ArgumentParser(prog='crashguard-doctor', description="Check crashguard setup.")
    parser.add_argument('data_dir', nargs='?', help="Optional data directory to inspect")
    parser.add_argument('--config', '-c', help="Path to config.json file")
    parser.add_argument('--json', action='store_true', help="Print a JSON report instead of text")
    args = parser.parse_args(sys.argv[1:])

    if args.json:
        doctor = CrashguardDoctor(args.data_dir, args.config, quiet=True)
        exit_code = doctor.run()
        print(json.dumps(doctor.to_dict(exit_code), indent=2))
    else:
        doctor = CrashguardDoctor(args.data_dir, args.config)
        exit_code = doctor.run()
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
