"""
Point CLOUDAUDIT_HOME at a throwaway directory before any cloudaudit module
is imported, so config, key file, database and logs never touch ~/.cloudaudit.
"""

import os
import shutil
import tempfile

_TEST_HOME = tempfile.mkdtemp(prefix='cloudaudit-test-')
os.environ['CLOUDAUDIT_HOME'] = _TEST_HOME
os.environ['CLOUDAUDIT_DB_BACKEND'] = 'sqlite'


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TEST_HOME, ignore_errors=True)
