from typing import List


def amount_split(amount: int) -> List[int]:
    """Given an amount returns the minimal list of powers of two summing to it, e.g. 13 is [1, 4, 8]."""
    if amount < 0:
        raise ValueError("can't split negative amount")
    rv = []
    for i in range(amount.bit_length()):
        if amount & (1 << i):  # if bit i is set, add 2**i to list
            rv.append(1 << i)
    return rv


def is_power_of_two(amount: int) -> bool:
    return amount > 0 and amount & (amount - 1) == 0
