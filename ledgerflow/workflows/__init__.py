"""Sample workflows shipped with ledgerflow."""
