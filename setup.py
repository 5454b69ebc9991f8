from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="pool-autoscaler",
    version="0.3.0",
    author="StepScale.io",
    author_email="info@stepscale.io",
    description="Queue-driven autoscaling for worker pools on Heroku, Kubernetes and ECS",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/stepscale/pool-autoscaler",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["lambda_function"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "boto3>=1.26.0",
        "botocore>=1.29.0",
        "retry>=0.9.2",
        "SQLAlchemy>=2.0",
        "requests>=2.28.0",
        "kubernetes>=26.1.0",
        "redis>=4.5.0",
        "urllib3>=1.26",
    ],
    extras_require={
        "postgres": ["psycopg2-binary>=2.9"],
        "test": ["pytest>=7.0"],
    },
)
