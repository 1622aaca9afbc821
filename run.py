import os

from soporte import create_app

app = create_app()

if __name__ == '__main__':
    # El host '0.0.0.0' permite que sea accesible desde la red
    app.run(host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', '5000')),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true')
