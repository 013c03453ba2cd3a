"""Staged integration harness for CDK Erigon: precompile call, Ballot deployment, voting workflow."""

__version__ = "0.1.0"
