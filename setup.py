from setuptools import setup, find_packages
from pgwarden import __version__
import os

setup(
    name = "pgwarden",
    version = os.getenv("VERSION") or __version__,
    zip_safe = False,
    packages = find_packages(exclude=["test"]),
    install_requires = [
        'packaging >= 20.0',
        'prettytable >= 3.0.0',
        'psycopg2 >= 2.9.0',
        'requests >= 1.2.0',
    ],
    extras_require = {
        'systemd': ['systemd-python'],
        'test': ['hypothesis', 'pytest'],
    },
    dependency_links = [],
    package_data = {},
    data_files = [],
    entry_points = {
        'console_scripts': ["pgwarden = pgwarden.pgwarden:main",
                            "pgwarden-ctl = pgwarden.cli:main"],
    }
)
