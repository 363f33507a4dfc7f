from setuptools import setup, find_packages

setup(
    name='instintel',
    version='0.1.0',
    packages=find_packages(),
    entry_points={
        'console_scripts': [
            'instintel=instintel.cli:main',
        ],
    },
    install_requires=[
        'python-dotenv',
        'openai',
        'pyyaml',
        'requests',
        'click>=8.2',
        'bs4',
        'pydantic>=2',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Institution contact directory sync',
    python_requires='>=3.10',
)
