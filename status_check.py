import json
import logging
import sys

from config import DB_PATH, LOG_LEVEL
from db import init_db
from institutions import status_check


def dump(status=None, db_path=DB_PATH):
    init_db(db_path)
    report = status_check(status=status, db_path=db_path)
    if not report['results']:
        print('No institutions with status', status or 'operating')
        return report
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return report


if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL)
    status = sys.argv[1] if len(sys.argv) > 1 else None
    dump(status)
