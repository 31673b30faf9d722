from setuptools import setup, find_packages


setup(
    name="request-filtering",
    version="1.0.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "requests>=2.32.3",
        "urllib3>=2.0",
        "PyYAML>=6.0.2",
    ],
    author="Request Filtering Team",
    description="SSRF protection for requests: blocks connections to private IP addresses",
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "request-filter=request_filtering.cli:main",
        ],
    },
)
