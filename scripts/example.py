"""
example.py - Simple Example for SwarmNet-Sim

This is a basic example script demonstrating the workflow for setting up and
running a swarm network simulation. Four pairs of team controllers spread
across a small forest exchange unicast, broadcast and multicast messages
while the communication model decides who can hear whom. A base of
operations tracks a lost person and waits for FOUND reports.
"""

import swarmnetsim as sn

#------------------------------------------------------------------------------#
#    World                                                                     #
#------------------------------------------------------------------------------#

world = sn.environment.World.forest(           # randomly planted trees
    nTrees=30,                                 # number of trees
    size=200,                                  # side length of xy square
    seed=11,                                   # reproducible planting
)
world.addObstacle(sn.environment.Building(     # one solid building
    'depot', lower=(40, -20, 0), upper=(60, 20, 12),
))

#------------------------------------------------------------------------------#
#    Communication Model                                                       #
#------------------------------------------------------------------------------#

config = sn.config.CommsConfig.fromDict({      # world description block
    'comms_model': {
        'neighbor_distance_max': 120,          # neighbors within 120 m
        'neighbor_distance_penalty_tree': 30,  # obstruction costs 30 m
        'comms_distance_max': 100,             # messages within 100 m
        'comms_distance_penalty_tree': 40,     # obstruction costs 40 m
        'comms_drop_probability_min': 0.0,     # no loss up close
        'comms_drop_probability_max': 0.3,     # 30% loss at max range
        'comms_outage_probability': 0.01,      # 1% outage chance per second
        'comms_outage_duration_min': 2,        # outages last 2-5 s
        'comms_outage_duration_max': 5,
    }
})

#------------------------------------------------------------------------------#
#    Robots                                                                    #
#------------------------------------------------------------------------------#

swarm = sn.robots.buildSwarm(                  # build team controllers
    num=8,                                     # number of robots: 8
    world=world,                               # robots report positions here
    robotType=sn.robots.TeamController,        # example controller
    spacing=20.0,                              # 20 m apart along x
    numMessages=50,                            # 50 rounds of traffic each
)
for i, robot in enumerate(swarm):              # drift across the forest
    robot.velocity[1] = 1.0 if (i % 2) else -1.0

world.setPosition('lost_person', (35, 60, 0))  # person to be found
swarm.append(sn.robots.BooRobot(               # base of operations
    position=(-20, 0, 2),                      # next to the first robot
    world=world,
    lostPerson='lost_person',                  # tracked world entity
    cellSize=10.0,                             # 10 m grid for reports
))

#------------------------------------------------------------------------------#
#    Load and Run Simulation                                                   #
#------------------------------------------------------------------------------#

sim = sn.simulator.Simulator(                  # create a simulation object
    name='Example',
    sampleTime=0.1,                            # 10 Hz tick
    N=600,                                     # one minute
    world=world,
    robots=swarm,
    config=config,
    seed=2024,                                 # reproducible comms draws
)

sim.run()                                      # start the simulation
sn.simulator.save(sim)                         # save simulation data file
