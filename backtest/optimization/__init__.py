from .genetic import GeneticOptimizer
