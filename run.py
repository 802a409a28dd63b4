#!/usr/bin/env python3
"""
Development runner.

    python run.py                   # development server
    python run.py --backup full     # one backup run, result printed as JSON
"""
import argparse
import json
import os
import sys

from diffzip import create_app


def main(argv=None):
    parser = argparse.ArgumentParser(description='DiffZip development runner')
    parser.add_argument('--backup', metavar='TYPE', nargs='?', const='full',
                        help="run one backup ('full', 'only-new', 'only-new-and-existing') and exit")
    parser.add_argument('--config', default='development', help='configuration name')
    args = parser.parse_args(argv)

    if args.backup:
        # No scheduler for a one-shot run
        app = create_app(args.config, overrides={'SCHEDULER_ENABLED': False})
        from diffzip.scheduler import run_backup

        with app.app_context():
            result = run_backup(app, args.backup)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.status == 'success' else 1

    app = create_app(args.config)
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=True)
    return 0


if __name__ == '__main__':
    sys.exit(main())
