"""Run storage, cycle coordination and progress publishing."""
