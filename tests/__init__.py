"""
Test suite for sparse coding research implementation.

This test suite validates the mathematical correctness and research accuracy
of the sparse coding implementation against the original papers:
- Olshausen & Field (1996) - Natural Image Statistics and Efficient Coding
- Beck & Teboulle (2009) - A Fast Iterative Shrinkage-Thresholding Algorithm
"""