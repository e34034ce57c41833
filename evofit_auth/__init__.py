"""EvoFit session authority: login, session rotation, role gate and Google sign-in."""
