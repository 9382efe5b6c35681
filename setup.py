from setuptools import setup, find_packages

setup(
    name="dlp-policy-engine",
    version="1.0.0",
    description="Data loss prevention scanner with pattern classification and policy evaluation",
    packages=find_packages(include=['dlp', 'dlp.*']),
    python_requires='>=3.8',
    install_requires=[
        'PyYAML>=6.0',
        'python-dotenv>=1.0.0',
        'pydantic>=2.0',
        'SQLAlchemy>=2.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'dlp=dlp.__main__:main',
        ],
    },
)
