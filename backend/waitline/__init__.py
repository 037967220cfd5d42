"""Waitline - virtual waiting lines.

Hosts open a queue and share its short code; customers join with the code
and follow their place in line; hosts call the next person, remove people
or end the queue.
"""
