"""
tiltcal — accelerometer tilt estimation and timed angle calibration

Modules
-------
sensor         Accelerometer sources (serial packets, simulation)
estimator      Accel -> pitch/roll/yaw with moving-average smoothing
calibration    Multi-step timed capture session
cli            Console calibration / live readout
"""
