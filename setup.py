from setuptools import setup, find_packages

setup(
    name="vaultcore",
    version="0.1",
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.11',
    install_requires=[
        'flask>=3.0.2',
        'flask-sqlalchemy>=3.1.1',
        'cryptography>=42.0.0',
        'argon2-cffi>=23.1.0',
    ],
    extras_require={
        'test': [
            'pytest>=8.0.0',
            'pytest-cov>=4.1.0',
        ],
    },
)
