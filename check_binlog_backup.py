#!/usr/bin/env python3
"""
Check Plugin (Nagios API) for the binary log backup run report
"""

import sys
import time
import yaml


def usage():
    print(f"Usage: {sys.argv[0]} <report file> <warn time> <critical time>", file=sys.stderr)
    sys.exit(3)


def check(report, warn_above, critical_above, now=None):
    """Work out plugin state from a loaded report

    :return: tuple, (exit code, message)
    """
    if now is None:
        now = time.time()
    if report.get('status') == 'error':
        return 2, f"CRITICAL: Last run failed: {report.get('error', 'unknown error')}"
    report_age = int(now - report['finish_time'])
    if report_age > critical_above:
        return 2, f"CRITICAL: Age {report_age} > {critical_above}"
    if report.get('failed'):
        return 1, f"WARNING: {report['failed']} binary log upload(s) failed on last run"
    if report_age > warn_above:
        return 1, f"WARNING: Age {report_age} > {warn_above}"
    return 0, f"OK: Age {report_age / 60:.1f}m, uploaded {report.get('uploaded', 0)}, current {report.get('current_binlog')}"


def main():
    if len(sys.argv) != 4:
        usage()
    report_file = sys.argv[1]
    try:
        warn_above = int(sys.argv[2])
        critical_above = int(sys.argv[3])
    except ValueError:
        usage()
    try:
        with open(report_file, 'rt') as f_report:
            report = yaml.safe_load(f_report)
    except FileNotFoundError:
        print("UNKNOWN: Missing report file")
        sys.exit(3)
    except PermissionError:
        print("UNKNOWN: Permissions prevent reading report file")
        sys.exit(3)
    if not isinstance(report, dict) or 'finish_time' not in report:
        print("UNKNOWN: Report file has no finish_time")
        sys.exit(3)
    state, message = check(report, warn_above, critical_above)
    print(message)
    sys.exit(state)


if __name__ == '__main__':
    main()
