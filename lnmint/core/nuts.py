SWAP_NUT = 3
MINT_NUT = 4
MELT_NUT = 5
STATE_NUT = 7
FEE_RETURN_NUT = 8
RESTORE_NUT = 9
DLEQ_NUT = 12
