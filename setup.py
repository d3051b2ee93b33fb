from setuptools import setup, find_packages

setup(
    name='kb_indexer',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'fastapi',
        'uvicorn',
        'pydantic>=2',
        'pydantic-settings',
        'python-dotenv',
        'httpx',
        'beautifulsoup4',
        'redis',
        'redlock-py',
        'celery',
        'numpy',
        'sentence-transformers',
        'openai',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'kb-indexer-worker=kb_indexer.background.runner:run',
        ],
    },
    author='Your Name',
    author_email='your.email@example.com',
    description='A FastAPI service that indexes web pages and documents into an embedded chatbot knowledge base.',
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
