"""Aarch64 registers, unwind rules, DWARF and compact-unwind rule translation, and prologue / epilogue analysis."""