# FarmAssist disease-detection backend
