"""Bayesian dynamic site-occupancy models fit by Gibbs and Metropolis sampling."""
