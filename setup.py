from setuptools import setup, find_packages

setup(
    name='kbsync',
    version='0.1.0',
    packages=find_packages(),
    entry_points={
        'console_scripts': [
            'kbsync=kbsync.cli:main',
        ],
    },
    install_requires=[
        'python-dotenv',
        'openai>=1.66',
        'pyyaml',
        'requests',
        'click',
        'aiohttp',
        'pydantic>=2',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx',
        ],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Notion and Slack knowledge-base sync',
    python_requires='>=3.10',
)
