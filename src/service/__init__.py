"""Background supervisor: keeps scheduled workflows alive in a long-running process."""
