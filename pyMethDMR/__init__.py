"""Detection of differentially methylated regions from bisulfite sequencing counts."""
