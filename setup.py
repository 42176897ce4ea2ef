from setuptools import setup, find_packages

setup(
    name='site_ingest',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'fastapi>=0.110',
        'uvicorn[standard]>=0.27',
        'pydantic>=2.5',
        'pydantic-settings>=2.1',
        'python-dotenv>=1.0',
        'httpx>=0.27',
        'beautifulsoup4>=4.12',
        'readability-lxml>=0.8.1',
        'lxml-html-clean>=0.1',
        'openai>=1.12',
        'numpy>=1.24',
        'databases[aiosqlite]>=0.9',
        'sqlalchemy>=2.0',
        'redis>=5.0.1',
    ],
    extras_require={
        'gemini': ['google-generativeai>=0.5'],
        'local': ['sentence-transformers>=2.5'],
        'postgres': ['databases[asyncpg]>=0.9', 'psycopg2-binary>=2.9'],
        'test': ['pytest>=8.0', 'pytest-asyncio>=0.23'],
    },
    entry_points={
        'console_scripts': [
            'site-ingest=site_ingest.main:run',
        ],
    },
    author='Site Ingest Developers',
    description='A FastAPI service that crawls a website, chunks and embeds its pages, and streams import progress.',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
)
