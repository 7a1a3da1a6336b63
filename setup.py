from setuptools import find_packages, setup

tests_require = [
    'deepdiff>=6.0',
    'pytest>=7.0',
]

setup(
    name='gecko-profile-processor',
    version='0.1.0',
    packages=find_packages('src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'toml>=0.10.2',
    ],
    entry_points='''
        [console_scripts]
        geckoproc=geckoproc.cli:run
    ''',
    tests_require=tests_require,
    extras_require={
        'test_utils': tests_require,
    }
)
