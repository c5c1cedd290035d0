"""
pytest configuration for TokenVote tests.
Adds the project source directories to sys.path.
"""
import sys
import os

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(ROOT, 'backend'))
sys.path.insert(0, os.path.join(ROOT, 'blockchain'))
sys.path.insert(0, os.path.join(ROOT, 'contract'))
